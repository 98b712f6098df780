"""Tool registry: metadata, schema validation and guarded execution."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ...tools.errors import ErrorCode, ToolError
from .types import ApprovalType, ToolCategory, ToolContext, ToolExecutor, ToolResult, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "ValidationOutcome",
    "DuplicateToolError",
    "format_validation_error",
]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 20


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


# -----------------------------------------------------------------------------
# Registration & Validation
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool."""

    spec: ToolSpec
    executor: ToolExecutor
    validator: Draft202012Validator | None
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(slots=True)
class ValidationOutcome:
    """Result of :meth:`ToolRegistry.validate`.

    ``data`` is the typed argument object when the tool declares one, else the
    validated mapping.
    """

    ok: bool
    data: Any = None
    error: str | None = None
    issues: list[str] = field(default_factory=list)


def format_validation_error(tool_name: str, error: str) -> str:
    return (
        f"Tool '{tool_name}' validation failed.\n\n"
        f"**Error**: {error}\n\n"
        "**Fix**: Check required fields and parameter types."
    )


def _format_path(path: Any) -> str:
    parts = [str(part) for part in path]
    return ".".join(parts)


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry of tools available to the agent.

    Example:
        registry = ToolRegistry()
        registry.register(ToolSpec(name="echo", description="Echo"), echo_executor)
        result = await registry.execute("echo", {"text": "hi"}, ToolContext())
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        spec: ToolSpec,
        executor: ToolExecutor,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register ``executor`` under ``spec.name``.

        Raises:
            DuplicateToolError: The name is taken and ``allow_override`` is False.
            SchemaError: ``spec.parameters`` is not a valid JSON schema.
        """
        if spec.name in self._tools and not allow_override:
            raise DuplicateToolError(spec.name)
        validator: Draft202012Validator | None = None
        if spec.parameters:
            Draft202012Validator.check_schema(spec.parameters)
            validator = Draft202012Validator(spec.parameters)
        registration = ToolRegistration(
            spec=spec,
            executor=executor,
            validator=validator,
            enabled=enabled,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[spec.name] = registration
        LOGGER.debug("Registered tool: %s", spec.name)
        return registration

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def get_spec(self, name: str) -> ToolSpec | None:
        registration = self._tools.get(name)
        return registration.spec if registration is not None else None

    def has(self, name: str) -> bool:
        """Whether ``name`` is registered and enabled."""
        registration = self._tools.get(name)
        return registration is not None and registration.enabled

    def set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = enabled
        return True

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    # ------------------------------------------------------------------
    # Validation & execution
    # ------------------------------------------------------------------

    def validate(self, name: str, arguments: Mapping[str, Any]) -> ValidationOutcome:
        """Check ``arguments`` against the tool schema and build typed args."""
        registration = self._tools.get(name)
        if registration is None:
            return ValidationOutcome(ok=False, error=f"Unknown tool: {name}")
        data = dict(arguments or {})
        issues: list[str] = []
        if registration.validator is not None:
            try:
                errors = sorted(registration.validator.iter_errors(data), key=lambda e: _format_path(e.absolute_path))
            except SchemaError as exc:
                return ValidationOutcome(ok=False, error=f"Invalid parameters: invalid schema: {exc.message}")
            for issue in errors[:MAX_SCHEMA_ERRORS]:
                path = _format_path(issue.absolute_path)
                issues.append(f"{path}: {issue.message}" if path else issue.message)
        if issues:
            return ValidationOutcome(ok=False, error="Invalid parameters: " + "; ".join(issues), issues=issues)

        args_type = registration.spec.args_type
        if args_type is None:
            return ValidationOutcome(ok=True, data=data)
        build = getattr(args_type, "from_dict", None)
        try:
            typed = build(data) if build is not None else args_type(**data)
        except (KeyError, TypeError, ValueError) as exc:
            return ValidationOutcome(ok=False, error=f"Invalid parameters: {exc}", issues=[str(exc)])
        return ValidationOutcome(ok=True, data=typed)

    async def execute(self, name: str, arguments: Mapping[str, Any], context: ToolContext) -> ToolResult:
        """Validate and run a tool. Never raises except on cancellation."""
        registration = self._tools.get(name)
        if registration is None:
            return ToolResult.fail(f"Unknown tool: {name}", error_code=ErrorCode.UNKNOWN_TOOL)
        if not registration.enabled:
            return ToolResult.fail(f'Tool "{name}" is disabled', error_code=ErrorCode.TOOL_DISABLED)

        outcome = self.validate(name, arguments)
        if not outcome.ok:
            LOGGER.debug("Validation failed for %s: %s", name, outcome.error)
            return ToolResult.fail(
                format_validation_error(name, outcome.error or "Invalid parameters"),
                error_code=ErrorCode.INVALID_PARAMETER,
                issues=list(outcome.issues),
            )

        try:
            result = await registration.executor(outcome.data, context)
        except ToolError as exc:
            return ToolResult.fail(exc.message, error_code=exc.error_code)
        except Exception as exc:
            LOGGER.debug("Tool %s raised", name, exc_info=True)
            return ToolResult.fail(f"Execution error: {exc}", error_code=ErrorCode.EXECUTION_FAILED)
        if not isinstance(result, ToolResult):
            return ToolResult.ok("" if result is None else str(result))
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_specs(self, *, include_disabled: bool = False) -> list[ToolSpec]:
        return [r.spec for r in self._tools.values() if r.enabled or include_disabled]

    def definitions(self, *, include_plan: bool = False) -> list[dict[str, Any]]:
        """OpenAI tool definitions for enabled tools; plan tools only on request."""
        tools: list[dict[str, Any]] = []
        for registration in self._tools.values():
            if not registration.enabled:
                continue
            if registration.spec.category == ToolCategory.PLAN and not include_plan:
                continue
            tools.append(registration.spec.to_openai_tool())
        return tools

    def parallel_tools(self) -> list[str]:
        return [r.name for r in self._tools.values() if r.spec.parallel]

    def write_tools(self) -> list[str]:
        return [r.name for r in self._tools.values() if r.spec.is_write]

    def read_only_tools(self) -> list[str]:
        return [r.name for r in self._tools.values() if r.spec.parallel and not r.spec.is_write]

    def approval_type(self, name: str) -> str | None:
        """Approval class of ``name``, or None when no approval is needed."""
        spec = self.get_spec(name)
        if spec is None or spec.approval_type == ApprovalType.NONE:
            return None
        return spec.approval_type

    def is_parallel(self, name: str) -> bool:
        spec = self.get_spec(name)
        return bool(spec and spec.parallel)

    def is_write(self, name: str) -> bool:
        spec = self.get_spec(name)
        return bool(spec and spec.is_write)

    def stats(self) -> dict[str, Any]:
        by_category = Counter(r.spec.category for r in self._tools.values())
        return {
            "total": len(self._tools),
            "enabled": sum(1 for r in self._tools.values() if r.enabled),
            "by_category": dict(by_category),
        }
