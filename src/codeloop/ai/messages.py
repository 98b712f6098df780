"""Conversation data model shared by the context manager and agent loop.

Messages are plain dataclasses. Streaming assistant messages are mutated in
place while ``is_streaming`` is true and frozen by :meth:`Message.finalize`.
Tool calls carry a small status state machine enforced by
:meth:`ToolCall.transition`.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Sequence, Union

from .orchestration.errors import InvalidTransitionError, MessageFrozenError, MessageOrderError

__all__ = [
    "MessageRole",
    "TextPart",
    "ImagePart",
    "ToolCallPart",
    "ToolResultPart",
    "ContentPart",
    "ToolCallStatus",
    "ToolCall",
    "Message",
    "Conversation",
    "new_id",
    "to_openai_messages",
]


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Return a short random identifier."""
    token = uuid.uuid4().hex[:12]
    return f"{prefix}{token}" if prefix else token


# -----------------------------------------------------------------------------
# Roles and Parts
# -----------------------------------------------------------------------------


class MessageRole(str, Enum):
    """Who produced a message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    CHECKPOINT = "checkpoint"


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str
    type: str = "text"


@dataclass(slots=True, frozen=True)
class ImagePart:
    url: str
    mime_type: str | None = None
    type: str = "image"


@dataclass(slots=True, frozen=True)
class ToolCallPart:
    tool_call_id: str
    type: str = "tool_call"


@dataclass(slots=True, frozen=True)
class ToolResultPart:
    tool_call_id: str
    content: str
    type: str = "tool_result"


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    """Lifecycle of a single tool call."""

    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.REJECTED})

_ALLOWED_TRANSITIONS: Mapping[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset(
        {
            ToolCallStatus.AWAITING_APPROVAL,
            ToolCallStatus.RUNNING,
            ToolCallStatus.REJECTED,
            ToolCallStatus.ERROR,  # aborted before start
        }
    ),
    ToolCallStatus.AWAITING_APPROVAL: frozenset(
        {ToolCallStatus.RUNNING, ToolCallStatus.REJECTED, ToolCallStatus.ERROR}
    ),
    ToolCallStatus.RUNNING: frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR}),
}


@dataclass(slots=True)
class ToolCall:
    """A model-requested tool invocation.

    Attributes:
        id: Provider-assigned call identifier, unique per call.
        name: Tool name.
        arguments: Parsed arguments.
        raw_arguments: Raw JSON text as streamed, kept for diagnostics.
        status: Current lifecycle status.
        result: Result text once finished.
        error: Error text for failed or aborted calls.
        approval_type: Approval class of the tool, when it needs one.
        metadata: Executor metadata (paths touched, line counts, ...).
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: str | None = None
    error: str | None = None
    approval_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def transition(self, status: ToolCallStatus) -> None:
        """Move to ``status``, enforcing the state machine."""
        if status == self.status:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(self.status.value, status.value)
        self.status = status

    def signature(self) -> str:
        """Stable ``name:args`` form used by loop detection."""
        return f"{self.name}:{json.dumps(self.arguments, sort_keys=True, ensure_ascii=False)}"

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "status": self.status.value,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        if self.approval_type:
            data["approval_type"] = self.approval_type
        return data


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class Message:
    """One entry of the conversation transcript."""

    role: MessageRole
    content: str | list[ContentPart] = ""
    id: str = field(default_factory=new_id)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None
    is_streaming: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    _frozen: bool = field(default=False, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def user(cls, content: str | list[ContentPart], **metadata: Any) -> Message:
        return cls(role=MessageRole.USER, content=content, metadata=dict(metadata), _frozen=True)

    @classmethod
    def assistant(cls, content: str = "", *, streaming: bool = False) -> Message:
        message = cls(role=MessageRole.ASSISTANT, content=content, is_streaming=streaming)
        if not streaming:
            message._frozen = True
        return message

    @classmethod
    def tool(cls, tool_call_id: str, content: str, *, name: str | None = None) -> Message:
        return cls(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            _frozen=True,
        )

    @classmethod
    def checkpoint_marker(cls, checkpoint_id: str, description: str = "") -> Message:
        return cls(
            role=MessageRole.CHECKPOINT,
            content=description,
            metadata={"checkpoint_id": checkpoint_id},
            _frozen=True,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        for call in self.tool_calls:
            if call.id == tool_call_id:
                return call
        return None

    # ------------------------------------------------------------------
    # Streaming mutation
    # ------------------------------------------------------------------

    def append_text(self, text: str) -> None:
        self._ensure_mutable()
        if isinstance(self.content, str):
            self.content = self.content + text
        else:
            self.content.append(TextPart(text))

    def set_text(self, text: str) -> None:
        """Replace all text content, keeping non-text parts."""
        self._ensure_mutable()
        if isinstance(self.content, str):
            self.content = text
            return
        others = [part for part in self.content if not isinstance(part, TextPart)]
        self.content = [TextPart(text), *others]

    def add_tool_call(self, call: ToolCall) -> ToolCall:
        self._ensure_mutable()
        existing = self.find_tool_call(call.id)
        if existing is not None:
            return existing
        self.tool_calls.append(call)
        return call

    def finalize(self) -> None:
        self.is_streaming = False
        self._frozen = True

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise MessageFrozenError(f"Message {self.id} is finalized")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_openai(self) -> dict[str, Any]:
        """Return the chat-completions representation of this message."""
        payload: dict[str, Any] = {"role": self.role.value}
        if self.role is MessageRole.TOOL:
            payload["tool_call_id"] = self.tool_call_id
            payload["content"] = self.text
            return payload
        if isinstance(self.content, str):
            payload["content"] = self.content
        else:
            parts = (_part_to_openai(part) for part in self.content)
            payload["content"] = [part for part in parts if part is not None]
        if self.tool_calls:
            payload["tool_calls"] = [call.to_openai() for call in self.tool_calls]
            if not self.text:
                payload["content"] = None
        return payload


def _part_to_openai(part: ContentPart) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url}}
    return None


# -----------------------------------------------------------------------------
# Conversation
# -----------------------------------------------------------------------------


class Conversation:
    """Ordered message history that keeps tool messages paired with their calls."""

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = []
        for message in messages or ():
            self.append(message)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def append(self, message: Message) -> Message:
        if message.role is MessageRole.TOOL:
            owner = self._last_assistant()
            if owner is None or message.tool_call_id is None or owner.find_tool_call(message.tool_call_id) is None:
                raise MessageOrderError(
                    f"Tool message {message.tool_call_id!r} has no matching call in the preceding assistant message"
                )
        self._messages.append(message)
        return message

    def get(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def non_checkpoint(self) -> list[Message]:
        return [message for message in self._messages if message.role is not MessageRole.CHECKPOINT]

    def clear(self) -> None:
        self._messages.clear()

    def _last_assistant(self) -> Message | None:
        for message in reversed(self._messages):
            if message.role is MessageRole.ASSISTANT:
                return message
            if message.role is MessageRole.TOOL or message.role is MessageRole.CHECKPOINT:
                continue
            return None
        return None


def to_openai_messages(messages: Sequence[Message], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """Convert transcript messages to chat-completion dictionaries."""
    payload: list[dict[str, Any]] = []
    if system_prompt:
        payload.append({"role": "system", "content": system_prompt})
    for message in messages:
        if message.role is MessageRole.CHECKPOINT:
            continue
        payload.append(message.to_openai())
    return payload
