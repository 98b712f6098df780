"""Typed observer stream for agent state changes.

User interfaces subscribe to an :class:`EventBus` and receive immutable event
objects; they never reach into the session's mutable state. The bus is not
thread-safe and is meant to be used from the event loop thread.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from ..messages import ToolCall

__all__ = [
    "AgentEvent",
    "PhaseChanged",
    "TextAppended",
    "ReasoningAppended",
    "ToolCallUpdated",
    "ApprovalRequested",
    "ContextCompacted",
    "CheckpointCreated",
    "TurnCompleted",
    "AgentErrorEvent",
    "EventBus",
    "EventListener",
    "ToolCallLogEntry",
    "ToolCallLog",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """Base class for everything published on the bus."""

    session_id: str


@dataclass(slots=True, frozen=True)
class PhaseChanged(AgentEvent):
    previous: str
    phase: str


@dataclass(slots=True, frozen=True)
class TextAppended(AgentEvent):
    message_id: str
    text: str


@dataclass(slots=True, frozen=True)
class ReasoningAppended(AgentEvent):
    message_id: str
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallUpdated(AgentEvent):
    """A tool call changed status. ``tool_call`` is a detached snapshot."""

    message_id: str
    tool_call: Mapping[str, Any]

    @property
    def status(self) -> str:
        return str(self.tool_call.get("status", ""))


@dataclass(slots=True, frozen=True)
class ApprovalRequested(AgentEvent):
    tool_call_id: str
    tool_name: str
    approval_type: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ContextCompacted(AgentEvent):
    stats: Mapping[str, Any]


@dataclass(slots=True, frozen=True)
class CheckpointCreated(AgentEvent):
    checkpoint_id: str
    description: str
    file_count: int


@dataclass(slots=True, frozen=True)
class TurnCompleted(AgentEvent):
    message_id: str | None
    reason: str
    loops: int


@dataclass(slots=True, frozen=True)
class AgentErrorEvent(AgentEvent):
    message: str
    code: str | None = None


EventListener = Callable[[AgentEvent], None]


class EventBus:
    """Publish/subscribe hub for :class:`AgentEvent` objects.

    Example::

        bus = EventBus()
        unsubscribe = bus.subscribe(print, PhaseChanged)
        ...
        unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[EventListener, type[AgentEvent] | None]] = []

    def subscribe(
        self,
        listener: EventListener,
        event_type: type[AgentEvent] | None = None,
    ) -> Callable[[], None]:
        """Register ``listener`` for ``event_type`` (all events when ``None``)."""
        entry = (listener, event_type)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: AgentEvent) -> None:
        for listener, event_type in list(self._listeners):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                listener(event)
            except Exception:
                LOGGER.debug("Event listener failed for %s", type(event).__name__, exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


def snapshot_tool_call(call: ToolCall) -> dict[str, Any]:
    return call.to_dict()


# -----------------------------------------------------------------------------
# Tool Call Log
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallLogEntry:
    """One request or response record."""

    type: str
    tool_name: str
    data: Mapping[str, Any]
    duration_ms: float | None = None
    success: bool | None = None
    timestamp: float = field(default_factory=time.time)


class ToolCallLog:
    """Ring buffer of the most recent tool requests and responses."""

    def __init__(self, capacity: int = 100) -> None:
        self._capacity = max(1, capacity)
        self._entries: deque[ToolCallLogEntry] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def record_request(self, tool_name: str, arguments: Mapping[str, Any]) -> ToolCallLogEntry:
        entry = ToolCallLogEntry(type="request", tool_name=tool_name, data={"arguments": dict(arguments)})
        self._entries.append(entry)
        return entry

    def record_response(
        self,
        tool_name: str,
        result: str,
        *,
        success: bool,
        duration_ms: float,
        preview_chars: int = 500,
    ) -> ToolCallLogEntry:
        entry = ToolCallLogEntry(
            type="response",
            tool_name=tool_name,
            data={"result": result[:preview_chars]},
            duration_ms=duration_ms,
            success=success,
        )
        self._entries.append(entry)
        return entry

    def tail(self, limit: int | None = None) -> list[ToolCallLogEntry]:
        entries = list(self._entries)
        if limit is None or limit >= len(entries):
            return entries
        return entries[-limit:]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
