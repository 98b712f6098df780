"""Exceptions raised by the agent loop and its data model."""

from __future__ import annotations

__all__ = [
    "AgentError",
    "AgentBusyError",
    "ModelCallError",
    "AbortedError",
    "MaxLoopExceeded",
    "RepeatedCallDetected",
    "MessageOrderError",
    "MessageFrozenError",
    "InvalidTransitionError",
]


class AgentError(Exception):
    """Base class for agent loop failures."""


class AgentBusyError(AgentError):
    """Raised when a turn is submitted while another one is still running."""

    def __init__(self, message: str = "Agent is already running a turn") -> None:
        super().__init__(message)


class ModelCallError(AgentError):
    """A model call failed.

    Attributes:
        code: Short classification (``timeout``, ``rate_limit``, ``network``, ``api``).
        retryable: Whether the retry policy may try again.
    """

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable


class AbortedError(AgentError):
    """Cooperative cancellation was requested."""

    def __init__(self, message: str = "Aborted by user") -> None:
        super().__init__(message)


class MaxLoopExceeded(AgentError):
    """The loop ran for the configured maximum number of iterations."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Reached maximum tool call limit ({limit})")


class RepeatedCallDetected(AgentError):
    """The model kept requesting the same tool calls."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Repeated tool calls detected: {signature[:100]}")


class MessageOrderError(AgentError):
    """A tool message does not answer a call of the preceding assistant message."""


class MessageFrozenError(AgentError):
    """A finalized message was mutated."""


class InvalidTransitionError(AgentError):
    """A tool call status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move tool call from {current} to {target}")
