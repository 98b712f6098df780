"""Tests for token estimates, truncation and the sliding-window context manager."""

from __future__ import annotations

from typing import Sequence

from codeloop.ai.context.config import ContextConfig
from codeloop.ai.context.estimator import estimate_message_tokens, estimate_tokens
from codeloop.ai.context.manager import (
    CONTENT_TRUNCATED,
    SUMMARY_HEADING,
    TOOL_OUTPUT_REMOVED,
    ContextManager,
    compress_messages,
    group_messages,
)
from codeloop.ai.context.truncation import truncate_message, truncate_tool_result, truncate_tool_results_in_messages
from codeloop.ai.messages import ImagePart, Message, MessageRole, ToolCall


def _assistant_with_call(call_id: str, name: str, **arguments: object) -> Message:
    return Message(role=MessageRole.ASSISTANT, tool_calls=[ToolCall(call_id, name, dict(arguments))])


def _long_history() -> list[Message]:
    return [
        Message.user("Fix the parser\n" + "x" * 400),
        _assistant_with_call("c1", "edit_file", path="src/parser.py"),
        Message.tool("c1", "Error: edit failed", name="edit_file"),
        Message.assistant("Retried. " + "y" * 400),
        Message.user("Now add tests"),
        Message.assistant("ok"),
    ]


class _StubSummarizer:
    def __init__(self, summary: str | None) -> None:
        self._summary = summary
        self.requests: list[tuple[int, str | None]] = []

    @property
    def summary(self) -> str | None:
        return self._summary

    def request_compaction(self, messages: Sequence[Message], previous_summary: str | None) -> None:
        self.requests.append((len(messages), previous_summary))


# ---------------------------------------------------------------------------
# Estimates
# ---------------------------------------------------------------------------


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("你好") == 2


def test_estimate_message_tokens_counts_structure() -> None:
    assert estimate_message_tokens(Message.user("abcd")) == 5
    assert estimate_message_tokens(Message.user([ImagePart("https://example.com/a.png")])) == 89
    # 4 overhead + 10 per call + "read_file" (3) + '{"path": "a"}' (4)
    assert estimate_message_tokens(_assistant_with_call("c1", "read_file", path="a")) == 21


def test_payload_and_transcript_estimates_agree() -> None:
    payload = {
        "role": "assistant",
        "content": None,
        "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "read_file", "arguments": '{"path":"a"}'}}],
    }
    assert estimate_message_tokens(payload) == 20
    assert estimate_message_tokens({"role": "user", "content": [{"type": "image_url"}]}) == 89


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


def test_short_results_are_untouched() -> None:
    assert truncate_tool_result("", "read_file") == ""
    assert truncate_tool_result("small", "read_file") == "small"


def test_file_reads_keep_head_and_tail() -> None:
    config = ContextConfig(max_tool_result_chars=100)

    result = truncate_tool_result("x" * 200, "read_file", config)

    assert result == "x" * 30 + "\n\n... [155 characters omitted] ...\n\n" + "x" * 15


def test_important_tools_get_the_full_budget() -> None:
    config = ContextConfig(max_tool_result_chars=100)
    content = "z" * 90

    assert truncate_tool_result(content, "edit_file", config) == content
    assert truncate_tool_result(content, "read_file", config) != content


def test_errors_get_extra_room() -> None:
    config = ContextConfig(max_tool_result_chars=100)
    near_budget = "Error: " + "a" * 120
    far_over = "Error: " + "a" * 200

    assert truncate_tool_result(near_budget, "run_command", config) == near_budget
    shortened = truncate_tool_result(far_over, "run_command", config)
    assert shortened.startswith("Error: ")
    assert "\n\n... [truncated] ...\n\n" in shortened


def test_search_results_keep_whole_lines() -> None:
    config = ContextConfig(max_tool_result_chars=100)
    content = "\n".join(f"line{i:02d}" for i in range(20))

    result = truncate_tool_result(content, "search_files", config)

    assert result == "\n".join(f"line{i:02d}" for i in range(7)) + "\n\n... [13 more results omitted]"


def test_truncate_message() -> None:
    text = "a" * 1000 + "b" * 2000
    assert truncate_message("short") == "short"
    assert truncate_message(text) == "a" * 1000 + "b" * 200 + "\n...[truncated]...\n" + "b" * 600
    assert truncate_message(text, preserve_ends=False) == "a" * 1000 + "b" * 1000 + "...[truncated]"


def test_truncating_messages_keeps_unchanged_objects() -> None:
    config = ContextConfig(max_tool_result_chars=100)
    call = _assistant_with_call("c1", "read_file", path="a.txt")
    short = Message.tool("c1", "fine", name="read_file")
    long = Message.tool("c1", "x" * 200, name="read_file")

    result = truncate_tool_results_in_messages([call, short, long], config)

    assert result[0] is call
    assert result[1] is short
    assert result[2] is not long
    assert result[2].id == long.id
    assert "[155 characters omitted]" in result[2].text


# ---------------------------------------------------------------------------
# Context manager
# ---------------------------------------------------------------------------


def test_group_messages_splits_on_user_turns() -> None:
    groups = group_messages(_long_history())

    assert [group.user_index for group in groups] == [0, 4]
    assert groups[0].assistant_indices == [1, 3]
    assert groups[0].tool_indices == [2]
    assert groups[1].indices == [4, 5]


def test_under_budget_history_is_kept() -> None:
    history = [Message.user("hello"), Message.assistant("hi")]
    manager = ContextManager(ContextConfig(max_tokens=1000))

    result = manager.optimize(history, "System")

    assert result.messages == history
    assert result.system_prompt == "System"
    assert result.summary is None
    assert result.stats.kept_turns == 1
    assert result.stats.compacted_turns == 0


def test_under_budget_history_still_truncates_tool_results() -> None:
    history = [
        Message.user("read it"),
        _assistant_with_call("c1", "read_file", path="big.txt"),
        Message.tool("c1", "x" * 5000, name="read_file"),
    ]

    result = ContextManager().optimize(history)

    assert len(result.messages[2].text) < 5000
    assert result.messages[:2] == history[:2]


def test_over_budget_history_is_compacted_with_quick_summary() -> None:
    manager = ContextManager(ContextConfig(max_tokens=50, keep_recent_turns=1))
    history = _long_history()

    result = manager.optimize(history, "Base prompt")

    assert [message.text for message in result.messages] == ["Now add tests", "ok"]
    assert result.system_prompt.startswith(f"Base prompt\n\n{SUMMARY_HEADING}\n")
    assert result.system_prompt.endswith("---\nContinue based on the above context.")
    assert "**User Requests (1):**\n1. Fix the parser" in result.summary
    assert "**File Operations:**\nedit_file: src/parser.py" in result.summary
    assert "**Tools Used:** edit_file" in result.summary
    assert "**Errors Encountered:** 1 error(s)" in result.summary
    assert result.stats.kept_turns == 1
    assert result.stats.compacted_turns == 1
    assert result.stats.final_tokens < result.stats.original_tokens
    assert manager.last_stats == result.stats


def test_optimize_is_idempotent() -> None:
    manager = ContextManager(ContextConfig(max_tokens=50, keep_recent_turns=1))
    history = _long_history()

    first = manager.optimize(history, "Base prompt")
    second = manager.optimize(history, "Base prompt")

    assert second.messages == first.messages
    assert second.system_prompt == first.system_prompt


def test_checkpoint_markers_are_dropped() -> None:
    history = [Message.checkpoint_marker("cp1", "before"), Message.user("hello")]

    result = ContextManager().optimize(history)

    assert [message.role for message in result.messages] == [MessageRole.USER]


def test_summarizer_summary_is_preferred() -> None:
    summarizer = _StubSummarizer("model summary")
    manager = ContextManager(ContextConfig(max_tokens=50, keep_recent_turns=1), summarizer=summarizer)

    result = manager.optimize(_long_history())

    assert result.summary == "model summary"
    assert result.system_prompt == f"{SUMMARY_HEADING}\nmodel summary\n\n---\nContinue based on the above context."
    assert summarizer.requests == [(6, "model summary")]


def test_quick_summary_stands_in_until_summarizer_finishes() -> None:
    summarizer = _StubSummarizer(None)
    manager = ContextManager(ContextConfig(max_tokens=50, keep_recent_turns=1), summarizer=summarizer)

    result = manager.optimize(_long_history())

    assert summarizer.requests == [(6, None)]
    assert result.summary.startswith("**User Requests (1):**")


def test_compress_messages_shrinks_old_messages() -> None:
    messages = [
        {"role": "user", "content": "u1"},
        {"role": "assistant", "content": "a" * 600},
        {"role": "tool", "tool_call_id": "c1", "content": "t" * 150},
        {"role": "user", "content": "u2"},
        {"role": "tool", "tool_call_id": "c2", "content": "r" * 150},
        {"role": "user", "content": "u3"},
        {"role": "user", "content": "u4"},
    ]

    changed = compress_messages(messages, threshold_chars=500)

    assert changed == 2
    assert messages[1]["content"] == "a" * 200 + CONTENT_TRUNCATED + "a" * 200
    assert messages[2]["content"] == TOOL_OUTPUT_REMOVED
    assert messages[4]["content"] == "r" * 150


def test_compress_messages_leaves_small_or_short_histories() -> None:
    messages = [{"role": "user", "content": "u1"}, {"role": "tool", "content": "t" * 150}, {"role": "user", "content": "u2"}]

    assert compress_messages(messages, threshold_chars=10_000) == 0
    assert compress_messages(messages, threshold_chars=10) == 0
    assert messages[1]["content"] == "t" * 150
