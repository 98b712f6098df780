"""Standardized error types for agent tools.

Tool failures travel back to the model as tool-result messages, so every
error here serializes to a small JSON-friendly dictionary and carries a
recovery hint the model can act on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool responses."""

    # Lookup errors
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_DISABLED = "tool_disabled"

    # Argument errors
    INVALID_PARAMETER = "invalid_parameter"
    MISSING_PARAMETER = "missing_parameter"

    # File errors
    FILE_NOT_FOUND = "file_not_found"
    PATH_OUTSIDE_WORKSPACE = "path_outside_workspace"
    READ_BEFORE_WRITE = "read_before_write"
    WRITE_FAILED = "write_failed"

    # Execution errors
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    OPERATION_CANCELLED = "operation_cancelled"

    # General errors
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"
    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON tool responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Specific Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolValidationError(ToolError):
    """Arguments did not match the tool's parameter schema."""

    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Invalid parameters")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check required fields and parameter types.")

    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.issues:
            result["issues"] = list(self.issues)
        return result


@dataclass
class ToolExecutionError(ToolError):
    """The executor raised or reported a failure."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")


@dataclass
class ToolTimeoutError(ToolError):
    """The executor did not finish before its deadline."""

    error_code: str = field(default=ErrorCode.TIMEOUT)
    message: str = field(default="Tool execution timed out")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry with a narrower request")

    timeout_seconds: float | None = field(default=None)

    retryable: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        return result


@dataclass
class ToolRejectedError(ToolError):
    """The user declined to run the tool."""

    error_code: str = field(default=ErrorCode.REJECTED)
    message: str = field(default="Tool call was rejected by the user.")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Ask the user how to proceed")

    severity: ClassVar[str] = "warning"


@dataclass
class ReadBeforeWriteError(ToolError):
    """A mutating tool targeted a file that was not read in this session."""

    error_code: str = field(default=ErrorCode.READ_BEFORE_WRITE)
    message: str = field(default="Read-before-write required: You must read the file first.")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Call read_file on the path, then retry the edit")

    path: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.path is not None:
            result["path"] = self.path
        return result


@dataclass
class PathOutsideWorkspaceError(ToolError):
    """A path resolved outside the workspace root."""

    error_code: str = field(default=ErrorCode.PATH_OUTSIDE_WORKSPACE)
    message: str = field(default="Security: Path outside workspace")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Use a path relative to the workspace")

    path: str | None = field(default=None)


__all__ = [
    "ErrorCode",
    "ToolError",
    "ToolValidationError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "ToolRejectedError",
    "ReadBeforeWriteError",
    "PathOutsideWorkspaceError",
]
