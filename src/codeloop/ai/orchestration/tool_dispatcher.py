"""Tool dispatcher: timing, timeouts and structured errors around the registry.

The dispatcher never raises for tool failures. Everything that goes wrong is
reported through :class:`DispatchResult.error` as a :class:`ToolError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ..tools.errors import (
    ErrorCode,
    ToolError,
    ToolExecutionError,
    ToolTimeoutError,
    ToolValidationError,
)
from .tools.registry import ToolRegistry
from .tools.types import ToolContext, ToolResult

__all__ = [
    "DispatchResult",
    "DispatchListener",
    "ToolDispatcher",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchResult:
    """Result of a tool dispatch operation.

    Attributes:
        success: Whether the tool executed successfully.
        result: Result text returned by the tool.
        error: Error if execution failed.
        tool_name: Name of the tool executed.
        execution_time_ms: Execution time in milliseconds.
        metadata: Executor metadata (paths, line counts, ...).
    """

    success: bool
    result: str
    error: ToolError | None = None
    tool_name: str = ""
    execution_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        """Text to hand back to the model."""
        if self.success:
            return self.result
        message = self.error.message if self.error is not None else "Unknown error"
        return f"Error: {message}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "tool_name": self.tool_name,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error.to_dict() if self.error else {"message": "Unknown error"}
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# -----------------------------------------------------------------------------
# Dispatch Listener
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, tool_name: str, arguments: Mapping[str, Any]) -> None:
        ...

    def on_tool_complete(self, result: DispatchResult) -> None:
        ...

    def on_tool_error(self, tool_name: str, error: ToolError) -> None:
        ...


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Runs registry tools and normalizes their outcome.

    Example:
        dispatcher = ToolDispatcher(registry)
        result = await dispatcher.dispatch("read_file", {"path": "a.py"}, context, timeout=60)
    """

    def __init__(self, registry: ToolRegistry, *, listener: DispatchListener | None = None) -> None:
        self._registry = registry
        self._listener = listener

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        context: ToolContext | None = None,
        *,
        timeout: float | None = None,
    ) -> DispatchResult:
        """Run one tool call, racing it against ``timeout`` seconds when given."""
        started = time.perf_counter()
        self._notify("on_tool_start", tool_name, arguments)
        context = context or ToolContext()
        try:
            if timeout is not None and timeout > 0:
                outcome = await asyncio.wait_for(self._registry.execute(tool_name, arguments, context), timeout)
            else:
                outcome = await self._registry.execute(tool_name, arguments, context)
        except asyncio.TimeoutError:
            error = ToolTimeoutError(
                message=f"Tool execution timed out after {_format_seconds(timeout)}s",
                timeout_seconds=timeout,
            )
            return self._error_result(tool_name, error, started)

        if outcome.success:
            result = DispatchResult(
                success=True,
                result=outcome.result,
                tool_name=tool_name,
                execution_time_ms=_elapsed_ms(started),
                metadata=dict(outcome.meta),
            )
            self._notify("on_tool_complete", result)
            return result
        return self._error_result(tool_name, _error_from_result(outcome), started, outcome)

    async def dispatch_batch(
        self,
        calls: Sequence[tuple[str, Mapping[str, Any]]],
        context: ToolContext | None = None,
        *,
        parallel: bool = False,
        stop_on_error: bool = False,
        timeout: float | None = None,
    ) -> list[DispatchResult]:
        """Dispatch several calls, concurrently when ``parallel`` is set.

        ``stop_on_error`` only applies to sequential batches.
        """
        if parallel:
            return list(
                await asyncio.gather(
                    *(self.dispatch(name, args, context, timeout=timeout) for name, args in calls)
                )
            )
        results: list[DispatchResult] = []
        for name, args in calls:
            result = await self.dispatch(name, args, context, timeout=timeout)
            results.append(result)
            if stop_on_error and not result.success:
                break
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _error_result(
        self,
        tool_name: str,
        error: ToolError,
        started: float,
        outcome: ToolResult | None = None,
    ) -> DispatchResult:
        result = DispatchResult(
            success=False,
            result=outcome.result if outcome is not None else "",
            error=error,
            tool_name=tool_name,
            execution_time_ms=_elapsed_ms(started),
            metadata=dict(outcome.meta) if outcome is not None else {},
        )
        LOGGER.debug("Tool %s failed: %s", tool_name, error)
        self._notify("on_tool_error", tool_name, error)
        self._notify("on_tool_complete", result)
        return result

    def _notify(self, method: str, *args: Any) -> None:
        if self._listener is None:
            return
        try:
            getattr(self._listener, method)(*args)
        except Exception:
            LOGGER.debug("Listener %s failed", method, exc_info=True)


def _error_from_result(outcome: ToolResult) -> ToolError:
    message = outcome.error or "Tool execution failed"
    code = outcome.meta.get("error_code") or ErrorCode.EXECUTION_FAILED
    if code == ErrorCode.INVALID_PARAMETER:
        return ToolValidationError(message=message, issues=list(outcome.meta.get("issues") or []))
    if code == ErrorCode.TIMEOUT:
        return ToolTimeoutError(message=message)
    if code == ErrorCode.EXECUTION_FAILED:
        return ToolExecutionError(message=message)
    return ToolError(error_code=code, message=message)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _format_seconds(value: float | None) -> str:
    if value is None:
        return "0"
    return f"{value:g}"
