"""Tool system for the agent loop.

This package provides the tool registry and the types shared by the
dispatcher and the builtin tools.

Example:
    from codeloop.ai.orchestration.tools import ToolRegistry, ToolSpec

    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo", description="Echo text"), echo)
"""

from .registry import DuplicateToolError, ToolRegistration, ToolRegistry, ValidationOutcome
from .types import ApprovalType, ToolCategory, ToolContext, ToolExecutor, ToolResult, ToolSpec

__all__ = [
    "ApprovalType",
    "DuplicateToolError",
    "ToolCategory",
    "ToolContext",
    "ToolExecutor",
    "ToolRegistration",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "ValidationOutcome",
]
