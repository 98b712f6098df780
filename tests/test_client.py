"""Tests for the OpenAI-compatible model client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI

from codeloop.ai.client import AIClient, ClientSettings
from codeloop.ai.context.estimator import HeuristicCounter
from codeloop.ai.orchestration.agent import AgentConfig, AgentSession
from codeloop.ai.orchestration.stream import (
    FullToolCall,
    ReasoningDelta,
    StreamDone,
    StreamError,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)
from codeloop.ai.orchestration.tools.registry import ToolRegistry

_REQUEST = httpx.Request("POST", "http://local/chat/completions")


def _chunk(*, reasoning: str | None = None, tool_calls: list[Any] | None = None) -> SimpleNamespace:
    delta = SimpleNamespace(reasoning_content=reasoning, tool_calls=tool_calls)
    return SimpleNamespace(type="chunk", chunk=SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))


def _completion(tool_calls: list[Any] | None = None, usage: Any = None) -> SimpleNamespace:
    message = SimpleNamespace(content=None, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


class _FakeStream:
    def __init__(self, events: Iterable[Any], completion: Any, error: Exception | None) -> None:
        self._events = list(events)
        self._completion = completion
        self._error = error

    def __aiter__(self) -> "_FakeStream":
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event
        if self._error is not None:
            raise self._error

    async def get_final_completion(self) -> Any:
        return self._completion


class _FakeStreamContext:
    def __init__(self, attempt: Any) -> None:
        self._attempt = attempt

    async def __aenter__(self) -> _FakeStream:
        if isinstance(self._attempt, Exception):
            raise self._attempt
        return self._attempt

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    """Serves one scripted attempt per ``stream`` call."""

    def __init__(self, attempts: list[Any]) -> None:
        self._attempts = list(attempts)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        return _FakeStreamContext(self._attempts.pop(0))


def _make_client(attempts: list[Any], **overrides: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(attempts)
    fake_openai = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    options: dict[str, Any] = {"base_url": "http://local", "api_key": "test", "model": "gpt-4o-mini"}
    options.update(overrides)
    client = AIClient(
        ClientSettings(**options),
        client=cast(AsyncOpenAI, fake_openai),
        token_counter=HeuristicCounter(),
    )
    return client, completions


async def _collect(client: AIClient, messages: list[dict[str, Any]] | None = None, **kwargs: Any) -> list[Any]:
    messages = messages if messages is not None else [{"role": "user", "content": "Hi"}]
    return [event async for event in client.stream_turn(messages, kwargs.pop("tools", []), **kwargs)]


@pytest.mark.asyncio
async def test_stream_turn_normalizes_events() -> None:
    tool_delta = SimpleNamespace(id="call_1", index=0, function=SimpleNamespace(name="read_file"))
    continuation = SimpleNamespace(id=None, index=0, function=SimpleNamespace(name=None))
    events = [
        _chunk(reasoning="think"),
        SimpleNamespace(type="content.delta", delta="Hello"),
        _chunk(tool_calls=[tool_delta]),
        _chunk(tool_calls=[continuation]),
        SimpleNamespace(type="tool_calls.function.arguments.delta", index=0, arguments_delta='{"path": '),
        SimpleNamespace(type="tool_calls.function.arguments.delta", index=0, arguments_delta='"a.py"}'),
        SimpleNamespace(type="tool_calls.function.arguments.done", index=0),
        SimpleNamespace(type="tool_calls.function.arguments.done", index=0),
        SimpleNamespace(type="content.done", content="Hello"),
    ]
    final_call = SimpleNamespace(
        id="call_1", function=SimpleNamespace(name="read_file", arguments='{"path": "a.py"}')
    )
    usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15)
    client, _ = _make_client([_FakeStream(events, _completion([final_call], usage), None)])

    collected = await _collect(client)

    assert collected == [
        ReasoningDelta("think"),
        TextDelta("Hello"),
        ToolCallStart(id="call_1", name="read_file"),
        ToolCallDelta(id="call_1", args_fragment='{"path": '),
        ToolCallDelta(id="call_1", args_fragment='"a.py"}'),
        ToolCallEnd(id="call_1"),
        StreamDone(
            tool_calls=(FullToolCall(id="call_1", name="read_file", arguments='{"path": "a.py"}'),),
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        ),
    ]


@pytest.mark.asyncio
async def test_payload_includes_system_prompt_and_tools() -> None:
    client, completions = _make_client([_FakeStream([], _completion(), None)])
    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {"type": "object"}}}]

    collected = await _collect(client, tools=tools, system_prompt="Be helpful")

    payload = completions.calls[0]
    assert [message["role"] for message in payload["messages"]] == ["system", "user"]
    assert payload["messages"][0]["content"] == "Be helpful"
    assert payload["tools"] == tools
    assert payload["temperature"] == 0.2
    assert payload["stream_options"] == {"include_usage": True}
    assert collected == [StreamDone()]


@pytest.mark.asyncio
async def test_existing_system_message_is_kept() -> None:
    client, completions = _make_client([_FakeStream([], _completion(), None)], temperature=None)
    messages = [{"role": "system", "content": "Original"}, {"role": "user", "content": "Hi"}]

    await _collect(client, messages, system_prompt="Replacement")

    payload = completions.calls[0]
    assert payload["messages"] == messages
    assert "tools" not in payload
    assert "temperature" not in payload


@pytest.mark.asyncio
async def test_stream_turn_requires_messages() -> None:
    client, _ = _make_client([])

    generator = client.stream_turn([], [])
    with pytest.raises(ValueError):
        await generator.__anext__()


@pytest.mark.asyncio
async def test_setup_failure_is_retried() -> None:
    attempts = [
        APIConnectionError(request=_REQUEST),
        _FakeStream([SimpleNamespace(type="content.delta", delta="ok")], _completion(), None),
    ]
    client, completions = _make_client(attempts, max_retries=2, retry_min_seconds=0.0, retry_max_seconds=0.0)

    collected = await _collect(client)

    assert len(completions.calls) == 2
    assert collected == [TextDelta("ok"), StreamDone()]


@pytest.mark.asyncio
async def test_non_retryable_failure_becomes_stream_error() -> None:
    client, completions = _make_client([RuntimeError("Connection reset by peer")], max_retries=3)

    collected = await _collect(client)

    assert len(completions.calls) == 1
    assert collected == [StreamError(message="Connection reset by peer", code="network")]


@pytest.mark.asyncio
async def test_failure_after_output_is_not_retried() -> None:
    stream = _FakeStream(
        [SimpleNamespace(type="content.delta", delta="partial")],
        _completion(),
        APITimeoutError(request=_REQUEST),
    )
    client, completions = _make_client([stream, _FakeStream([], _completion(), None)], max_retries=3)

    collected = await _collect(client)

    assert len(completions.calls) == 1
    assert collected[0] == TextDelta("partial")
    assert isinstance(collected[1], StreamError)
    assert collected[1].code == "timeout"


@pytest.mark.asyncio
async def test_debug_logging_captures_prompt_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = _make_client([_FakeStream([], _completion(), None)], debug_logging=True)
    captured: dict[str, Any] = {}
    monkeypatch.setattr(client, "_log_prompt_payload", lambda payload: captured.setdefault("payload", payload))

    await _collect(client, [{"role": "user", "content": "Hello"}])

    assert captured["payload"]["messages"][0]["content"] == "Hello"


def test_count_tokens_uses_counter() -> None:
    client, _ = _make_client([])

    assert client.count_tokens("") == 0
    assert client.count_tokens("abcd") == 1


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _StubAsyncOpenAI:
        def __init__(self) -> None:
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    stub = _StubAsyncOpenAI()
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="gpt-4o-mini"),
        client=cast(AsyncOpenAI, stub),
        token_counter=HeuristicCounter(),
    )

    await client.aclose()

    assert stub.closed is True


@pytest.mark.asyncio
async def test_agent_retries_model_failures_surfaced_by_client() -> None:
    interrupted = _FakeStream(
        [SimpleNamespace(type="content.delta", delta="partial")],
        _completion(),
        APITimeoutError(request=_REQUEST),
    )
    attempts = [
        APIConnectionError(request=_REQUEST),
        interrupted,
        _FakeStream([SimpleNamespace(type="content.delta", delta="recovered")], _completion(), None),
    ]
    client, completions = _make_client(attempts, max_retries=2, retry_min_seconds=0.0, retry_max_seconds=0.0)
    session = AgentSession(client, ToolRegistry(), config=AgentConfig(retry_delay=0.0, enable_auto_fix=False))

    result = await session.send_message("Hi")

    assert len(completions.calls) == 3
    assert result.reason == "completed"
    assert result.text == "recovered"
