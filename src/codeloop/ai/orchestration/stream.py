"""Streaming event contract and the assembler that reduces it to a turn."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Sequence, Union

from ..messages import ToolCall
from .retry import classify_error

__all__ = [
    "TextDelta",
    "ReasoningDelta",
    "ToolCallStart",
    "ToolCallDelta",
    "ToolCallEnd",
    "FullToolCall",
    "StreamDone",
    "StreamError",
    "StreamEvent",
    "AssemblerUpdate",
    "AssembledTurn",
    "StreamAssembler",
    "ModelClient",
    "assemble",
    "STREAM_ENDED_UNEXPECTEDLY",
]

LOGGER = logging.getLogger(__name__)

STREAM_ENDED_UNEXPECTEDLY = "Stream ended unexpectedly"


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    id: str
    args_fragment: str


@dataclass(slots=True, frozen=True)
class ToolCallEnd:
    id: str


@dataclass(slots=True, frozen=True)
class FullToolCall:
    """A tool call delivered in one piece. ``arguments`` may be a dict or JSON text."""

    id: str
    name: str
    arguments: Mapping[str, Any] | str = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class StreamDone:
    final_text: str | None = None
    tool_calls: tuple[FullToolCall, ...] = ()
    usage: Mapping[str, int] | None = None


@dataclass(slots=True, frozen=True)
class StreamError:
    """Terminal failure. ``code`` is one of timeout, rate_limit, network, api, incomplete."""

    message: str
    code: str | None = None


StreamEvent = Union[
    TextDelta,
    ReasoningDelta,
    ToolCallStart,
    ToolCallDelta,
    ToolCallEnd,
    FullToolCall,
    StreamDone,
    StreamError,
]


class ModelClient(Protocol):
    """Anything that can stream one model turn as :data:`StreamEvent` objects."""

    def stream_turn(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...


# -----------------------------------------------------------------------------
# Assembler
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AssemblerUpdate:
    """Something observable changed while assembling.

    ``kind`` is one of ``text``, ``reasoning``, ``reasoning_end``,
    ``tool_call_start``, ``tool_call_args``, ``tool_call_ready``, ``done`` or
    ``error``.
    """

    kind: str
    text: str | None = None
    tool_call: ToolCall | None = None


@dataclass(slots=True)
class AssembledTurn:
    text: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Mapping[str, int] | None = None
    error: StreamError | None = None
    done: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


class StreamAssembler:
    """Reduces stream events into text, reasoning and tool calls.

    Argument fragments are buffered per call id and parsed when the call
    ends. Reasoning and text never interleave: an open reasoning segment is
    closed before any other event is applied. After ``done`` or ``error`` the
    assembler ignores further events until :meth:`reset`.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._text: list[str] = []
        self._reasoning: list[str] = []
        self._reasoning_open = False
        self._calls: dict[str, ToolCall] = {}
        self._buffers: dict[str, list[str]] = {}
        self._ended: set[str] = set()
        self._usage: Mapping[str, int] | None = None
        self._error: StreamError | None = None
        self._done = False
        self._final_text: str | None = None

    @property
    def finished(self) -> bool:
        return self._done or self._error is not None

    def feed(self, event: StreamEvent) -> list[AssemblerUpdate]:
        if self.finished:
            LOGGER.debug("Ignoring %s after terminal event", type(event).__name__)
            return []
        updates: list[AssemblerUpdate] = []
        if not isinstance(event, ReasoningDelta) and self._reasoning_open:
            self._reasoning_open = False
            updates.append(AssemblerUpdate("reasoning_end"))

        if isinstance(event, TextDelta):
            if event.text:
                self._text.append(event.text)
                updates.append(AssemblerUpdate("text", text=event.text))
        elif isinstance(event, ReasoningDelta):
            if event.text:
                self._reasoning_open = True
                self._reasoning.append(event.text)
                updates.append(AssemblerUpdate("reasoning", text=event.text))
        elif isinstance(event, ToolCallStart):
            call, created = self._ensure_call(event.id, event.name)
            if created:
                updates.append(AssemblerUpdate("tool_call_start", tool_call=call))
        elif isinstance(event, ToolCallDelta):
            call, created = self._ensure_call(event.id, "")
            if created:
                updates.append(AssemblerUpdate("tool_call_start", tool_call=call))
            if event.id not in self._ended:
                self._buffers.setdefault(event.id, []).append(event.args_fragment)
                call.raw_arguments += event.args_fragment
                updates.append(AssemblerUpdate("tool_call_args", text=event.args_fragment, tool_call=call))
        elif isinstance(event, ToolCallEnd):
            update = self._end_call(event.id)
            if update is not None:
                updates.append(update)
        elif isinstance(event, FullToolCall):
            updates.extend(self._apply_full_call(event))
        elif isinstance(event, StreamDone):
            for full_call in event.tool_calls:
                updates.extend(self._apply_full_call(full_call))
            updates.extend(self._flush_open_calls())
            self._final_text = event.final_text
            self._usage = event.usage
            self._done = True
            updates.append(AssemblerUpdate("done", text=self._joined_text()))
        elif isinstance(event, StreamError):
            updates.extend(self._flush_open_calls())
            self._error = event
            updates.append(AssemblerUpdate("error", text=event.message))
        else:
            LOGGER.debug("Unknown stream event %r", event)
        return updates

    def result(self) -> AssembledTurn:
        return AssembledTurn(
            text=self._joined_text(),
            reasoning="".join(self._reasoning),
            tool_calls=list(self._calls.values()),
            usage=self._usage,
            error=self._error,
            done=self._done,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _joined_text(self) -> str:
        streamed = "".join(self._text)
        if self._final_text:
            return self._final_text
        return streamed

    def _ensure_call(self, call_id: str, name: str) -> tuple[ToolCall, bool]:
        call = self._calls.get(call_id)
        if call is not None:
            if name and not call.name:
                call.name = name
            return call, False
        call = ToolCall(id=call_id, name=name)
        self._calls[call_id] = call
        return call, True

    def _end_call(self, call_id: str) -> AssemblerUpdate | None:
        call = self._calls.get(call_id)
        if call is None or call_id in self._ended:
            return None
        raw = "".join(self._buffers.pop(call_id, []))
        call.raw_arguments = raw
        call.arguments = _parse_arguments(call, raw)
        self._ended.add(call_id)
        return AssemblerUpdate("tool_call_ready", tool_call=call)

    def _apply_full_call(self, event: FullToolCall) -> list[AssemblerUpdate]:
        updates: list[AssemblerUpdate] = []
        call, created = self._ensure_call(event.id, event.name)
        if created:
            updates.append(AssemblerUpdate("tool_call_start", tool_call=call))
        if isinstance(event.arguments, str):
            raw = event.arguments
            arguments = _parse_arguments(call, raw)
        else:
            arguments = dict(event.arguments)
            raw = json.dumps(arguments, ensure_ascii=False)
        if arguments or event.id not in self._ended:
            call.arguments = arguments
            call.raw_arguments = raw
        self._buffers.pop(event.id, None)
        if event.id not in self._ended:
            self._ended.add(event.id)
            updates.append(AssemblerUpdate("tool_call_ready", tool_call=call))
        return updates

    def _flush_open_calls(self) -> list[AssemblerUpdate]:
        updates: list[AssemblerUpdate] = []
        for call_id in list(self._calls):
            if call_id in self._ended:
                continue
            update = self._end_call(call_id)
            if update is not None:
                updates.append(update)
        return updates


def _parse_arguments(call: ToolCall, raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        LOGGER.debug("Failed to parse arguments for %s (%s): %s", call.name, call.id, exc)
        call.metadata["parse_error"] = str(exc)
        return {}
    if not isinstance(parsed, dict):
        call.metadata["parse_error"] = "Tool arguments must be a JSON object"
        return {}
    return parsed


UpdateCallback = Callable[[AssemblerUpdate], Union[None, Awaitable[None]]]


async def assemble(
    stream: AsyncIterator[StreamEvent],
    on_update: UpdateCallback | None = None,
    *,
    assembler: StreamAssembler | None = None,
) -> AssembledTurn:
    """Consume ``stream`` until its first terminal event.

    The stream is closed exactly once afterwards. Exceptions raised by the
    stream itself resolve as an error turn rather than propagating;
    cancellation still propagates.
    """
    assembler = assembler or StreamAssembler()
    assembler.reset()
    try:
        async for event in stream:
            for update in assembler.feed(event):
                await _notify(on_update, update)
            if assembler.finished:
                break
        if not assembler.finished:
            for update in assembler.feed(StreamError(STREAM_ENDED_UNEXPECTEDLY, code="incomplete")):
                await _notify(on_update, update)
    except Exception as exc:
        LOGGER.debug("Model stream raised", exc_info=True)
        for update in assembler.feed(StreamError(str(exc) or type(exc).__name__, code=classify_error(exc))):
            await _notify(on_update, update)
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
    return assembler.result()


async def _notify(callback: UpdateCallback | None, update: AssemblerUpdate) -> None:
    if callback is None:
        return
    result = callback(update)
    if inspect.isawaitable(result):
        await result
