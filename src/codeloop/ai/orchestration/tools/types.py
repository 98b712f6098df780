"""Tool system types shared by the registry, dispatcher and builtin tools."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from ...tools.filesystem import SessionFileTracker

__all__ = [
    "ToolCategory",
    "ApprovalType",
    "ToolSpec",
    "ToolContext",
    "ToolResult",
    "ToolExecutor",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories."""

    READ = "read"
    WRITE = "write"
    TERMINAL = "terminal"
    SEARCH = "search"
    LSP = "lsp"
    NETWORK = "network"
    PLAN = "plan"


class ApprovalType:
    """Approval classes. Anything but ``NONE`` needs user confirmation."""

    NONE = "none"
    EDITS = "edits"
    TERMINAL = "terminal"
    DANGEROUS = "dangerous"


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Description sent to the model.
        parameters: JSON Schema for the tool's arguments.
        category: One of :class:`ToolCategory`.
        approval_type: One of :class:`ApprovalType`.
        parallel: Whether the tool may run concurrently with other parallel tools.
        args_type: Dataclass built from validated arguments, if any.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.READ
    approval_type: str = ApprovalType.NONE
    parallel: bool = False
    args_type: type | None = None

    @property
    def is_write(self) -> bool:
        return self.category == ToolCategory.WRITE

    @property
    def requires_approval(self) -> bool:
        return self.approval_type != ApprovalType.NONE

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
            "approval_type": self.approval_type,
            "parallel": self.parallel,
        }


# -----------------------------------------------------------------------------
# Execution Context & Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolContext:
    """Runtime context handed to every executor.

    Attributes:
        workspace_path: Root that relative paths resolve against.
        session: Tracks which files were read in this session.
        tool_call_id: Id of the call being executed, when known.
    """

    workspace_path: str | None = None
    session: SessionFileTracker = field(default_factory=SessionFileTracker)
    tool_call_id: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Normalized executor outcome."""

    success: bool
    result: str = ""
    error: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, result: str, **meta: Any) -> ToolResult:
        return cls(success=True, result=result, meta=dict(meta))

    @classmethod
    def fail(cls, error: str, *, result: str = "", **meta: Any) -> ToolResult:
        return cls(success=False, result=result, error=error, meta=dict(meta))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "result": self.result}
        if self.error is not None:
            data["error"] = self.error
        if self.meta:
            data["meta"] = dict(self.meta)
        return data


# Executors receive the typed argument dataclass when the ToolSpec declares one,
# otherwise the validated argument mapping.
ToolExecutor = Callable[[Any, ToolContext], Awaitable[ToolResult]]
