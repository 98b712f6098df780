"""Tests for the background :class:`CompactionService`."""

from __future__ import annotations

import pytest

from codeloop.ai.context.compaction import (
    COMPACTION_SYSTEM_PROMPT,
    MAX_SUMMARY_CHARS,
    CompactionService,
    build_compaction_prompt,
)
from codeloop.ai.messages import Message, MessageRole, ToolCall
from codeloop.ai.orchestration.stream import StreamDone, StreamError, TextDelta


def _history(turns: int = 4) -> list[Message]:
    messages: list[Message] = []
    for index in range(turns):
        messages.append(Message.user(f"request {index}"))
        messages.append(Message.assistant(f"answer {index}"))
    return messages


def test_prompt_describes_each_role() -> None:
    messages = [
        Message.user("please fix"),
        Message(role=MessageRole.ASSISTANT, content="on it", tool_calls=[ToolCall("c1", "read_file")]),
        Message.tool("c1", "t" * 300, name="read_file"),
    ]

    prompt = build_compaction_prompt(messages, "earlier work")

    assert "Previous Summary:\nearlier work" in prompt
    assert "[User]: please fix" in prompt
    assert "[Assistant] Used: read_file. on it" in prompt
    assert "[Tool]: " + "t" * 200 + "..." in prompt
    assert prompt.endswith("Summary:")


@pytest.mark.asyncio
async def test_request_produces_summary(model_client) -> None:
    model_client.add_turn(TextDelta("  user wants a parser  "), StreamDone())
    service = CompactionService(model_client, keep_recent_turns=1)

    service.request_compaction(_history(), None)
    summary = await service.wait()

    assert summary == "user wants a parser"
    assert service.summary == summary
    assert model_client.calls[0]["system_prompt"] == COMPACTION_SYSTEM_PROMPT
    assert model_client.calls[0]["tools"] == []
    prompt = model_client.calls[0]["messages"][0]["content"]
    assert "request 0" in prompt
    assert "request 3" not in prompt
    assert service.stats()["compacted_message_count"] == 6


@pytest.mark.asyncio
async def test_compacted_messages_are_not_resent(model_client) -> None:
    model_client.add_turn(TextDelta("first"), StreamDone())
    service = CompactionService(model_client, keep_recent_turns=1)
    history = _history()

    service.request_compaction(history, None)
    await service.wait()
    service.request_compaction(history, None)
    await service.wait()

    assert len(model_client.calls) == 1
    assert service.summary == "first"


@pytest.mark.asyncio
async def test_model_error_leaves_no_summary(model_client) -> None:
    model_client.add_turn(StreamError("overloaded", code="api"))
    service = CompactionService(model_client, keep_recent_turns=1)

    service.request_compaction(_history(), None)

    assert await service.wait() is None
    assert service.stats()["last_compacted_at"] is None


@pytest.mark.asyncio
async def test_short_history_needs_no_model_call(model_client) -> None:
    service = CompactionService(model_client, keep_recent_turns=3)

    service.request_compaction(_history(2), None)

    assert await service.wait() is None
    assert model_client.calls == []


def test_request_without_event_loop_is_ignored(model_client) -> None:
    service = CompactionService(model_client)

    service.request_compaction(_history(), None)

    assert not service.is_compacting
    assert model_client.calls == []


@pytest.mark.asyncio
async def test_long_summaries_are_clipped(model_client) -> None:
    model_client.add_turn(TextDelta("s" * (MAX_SUMMARY_CHARS + 50)), StreamDone())
    service = CompactionService(model_client, keep_recent_turns=1)

    summary = await service.force_compaction(_history())

    assert summary == "s" * MAX_SUMMARY_CHARS + "..."


def test_restore_and_clear(model_client) -> None:
    service = CompactionService(model_client)

    service.restore("saved summary")
    assert service.summary == "saved summary"

    service.clear_summary()
    assert service.summary is None
    assert service.stats() == {"last_compacted_at": None, "compacted_message_count": 0}
