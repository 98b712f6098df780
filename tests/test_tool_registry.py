"""Tests for the tool registry and dispatcher."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest
from jsonschema.exceptions import SchemaError

from codeloop.ai.orchestration.tool_dispatcher import DispatchResult, ToolDispatcher
from codeloop.ai.orchestration.tools import (
    ApprovalType,
    DuplicateToolError,
    ToolCategory,
    ToolContext,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)
from codeloop.ai.tools.errors import ErrorCode, ToolError, ToolExecutionError, ToolTimeoutError, ToolValidationError

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}, "count": {"type": "integer", "minimum": 1}},
    "required": ["text"],
}


async def _echo(args: Mapping[str, Any], context: ToolContext) -> ToolResult:
    return ToolResult.ok(args["text"] * args.get("count", 1), length=len(args["text"]))


async def _explode(args: Mapping[str, Any], context: ToolContext) -> ToolResult:
    raise RuntimeError("kaput")


async def _slow(args: Mapping[str, Any], context: ToolContext) -> ToolResult:
    await asyncio.sleep(1)
    return ToolResult.ok("late")


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="Echo text", parameters=ECHO_SCHEMA, parallel=True), _echo)
    return registry


class _Listener:
    def __init__(self) -> None:
        self.events: list[str] = []

    def on_tool_start(self, tool_name: str, arguments: Mapping[str, Any]) -> None:
        self.events.append(f"start:{tool_name}")

    def on_tool_complete(self, result: DispatchResult) -> None:
        self.events.append(f"complete:{result.tool_name}:{result.success}")

    def on_tool_error(self, tool_name: str, error: ToolError) -> None:
        self.events.append(f"error:{tool_name}")


class TestToolRegistry:
    """Registration, validation and guarded execution."""

    def test_duplicate_registration_is_refused(self) -> None:
        registry = _registry()
        with pytest.raises(DuplicateToolError):
            registry.register(ToolSpec(name="echo", description="again"), _echo)
        registry.register(ToolSpec(name="echo", description="again"), _echo, allow_override=True)
        assert registry.get_spec("echo").description == "again"

    def test_invalid_schema_is_refused(self) -> None:
        with pytest.raises(SchemaError):
            ToolRegistry().register(ToolSpec(name="bad", description="", parameters={"type": 12}), _echo)

    def test_validate_reports_issues(self) -> None:
        outcome = _registry().validate("echo", {"count": 0})
        assert not outcome.ok
        assert outcome.error.startswith("Invalid parameters: ")
        assert "'text' is a required property" in outcome.issues
        assert any(issue.startswith("count: ") for issue in outcome.issues)

    def test_validate_unknown_tool(self) -> None:
        outcome = ToolRegistry().validate("nope", {})
        assert outcome.error == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_execute_success(self) -> None:
        result = await _registry().execute("echo", {"text": "ab", "count": 2}, ToolContext())
        assert result.success
        assert result.result == "abab"
        assert result.meta == {"length": 2}

    @pytest.mark.asyncio
    async def test_execute_never_raises(self) -> None:
        registry = _registry()
        registry.register(ToolSpec(name="explode", description="boom"), _explode)

        unknown = await registry.execute("nope", {}, ToolContext())
        invalid = await registry.execute("echo", {}, ToolContext())
        raised = await registry.execute("explode", {}, ToolContext())

        assert unknown.error == "Unknown tool: nope"
        assert invalid.meta["error_code"] == ErrorCode.INVALID_PARAMETER
        assert "Tool 'echo' validation failed." in invalid.error
        assert raised.error == "Execution error: kaput"

    @pytest.mark.asyncio
    async def test_disabled_tool(self) -> None:
        registry = _registry()
        registry.set_enabled("echo", False)

        result = await registry.execute("echo", {"text": "x"}, ToolContext())

        assert result.error == 'Tool "echo" is disabled'
        assert not registry.has("echo")
        assert registry.definitions() == []

    def test_definitions_hide_plan_tools_by_default(self) -> None:
        registry = _registry()
        registry.register(ToolSpec(name="create_plan", description="plan", category=ToolCategory.PLAN), _echo)

        assert [tool["function"]["name"] for tool in registry.definitions()] == ["echo"]
        assert [tool["function"]["name"] for tool in registry.definitions(include_plan=True)] == ["echo", "create_plan"]

    def test_classification_queries(self) -> None:
        registry = _registry()
        registry.register(
            ToolSpec(
                name="delete",
                description="",
                category=ToolCategory.WRITE,
                approval_type=ApprovalType.DANGEROUS,
            ),
            _echo,
        )

        assert registry.read_only_tools() == ["echo"]
        assert registry.write_tools() == ["delete"]
        assert registry.approval_type("echo") is None
        assert registry.approval_type("delete") == "dangerous"
        assert registry.stats() == {"total": 2, "enabled": 2, "by_category": {"read": 1, "write": 1}}


class TestToolDispatcher:
    """Timing, timeouts and error normalization."""

    @pytest.mark.asyncio
    async def test_success_result(self) -> None:
        listener = _Listener()
        dispatcher = ToolDispatcher(_registry(), listener=listener)

        result = await dispatcher.dispatch("echo", {"text": "hi"})

        assert result.success
        assert result.content == "hi"
        assert result.metadata == {"length": 2}
        assert listener.events == ["start:echo", "complete:echo:True"]

    @pytest.mark.asyncio
    async def test_failures_are_structured(self) -> None:
        registry = _registry()
        registry.register(ToolSpec(name="explode", description=""), _explode)
        listener = _Listener()
        dispatcher = ToolDispatcher(registry, listener=listener)

        failed = await dispatcher.dispatch("explode", {})
        invalid = await dispatcher.dispatch("echo", {"count": 1})

        assert isinstance(failed.error, ToolExecutionError)
        assert failed.content == "Error: Execution error: kaput"
        assert isinstance(invalid.error, ToolValidationError)
        assert invalid.error.issues == ["'text' is a required property"]
        assert "error:explode" in listener.events

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        registry = ToolRegistry()
        registry.register(ToolSpec(name="slow", description=""), _slow)

        result = await ToolDispatcher(registry).dispatch("slow", {}, timeout=0.01)

        assert isinstance(result.error, ToolTimeoutError)
        assert result.error.message == "Tool execution timed out after 0.01s"
        assert result.to_dict()["error"]["timeout_seconds"] == 0.01

    @pytest.mark.asyncio
    async def test_batch_keeps_order_and_stops_on_error(self) -> None:
        registry = _registry()
        registry.register(ToolSpec(name="explode", description=""), _explode)
        dispatcher = ToolDispatcher(registry)
        calls = [("echo", {"text": "a"}), ("explode", {}), ("echo", {"text": "b"})]

        parallel = await dispatcher.dispatch_batch(calls, parallel=True)
        sequential = await dispatcher.dispatch_batch(calls, stop_on_error=True)

        assert [result.success for result in parallel] == [True, False, True]
        assert [result.tool_name for result in sequential] == ["echo", "explode"]
