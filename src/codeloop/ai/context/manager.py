"""Sliding-window context management with rolling summaries.

The manager keeps the most recent conversational turns verbatim, replaces
older turns with a summary appended to the system prompt, and truncates tool
results. Summaries come from an optional :class:`Summarizer`. Until it has
produced one, a quick local summary stands in so the loop never waits on a
model call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, MutableMapping, Protocol, Sequence

from ..messages import Message, MessageRole
from .config import ContextConfig, ContextStats
from .estimator import estimate_message_tokens
from .truncation import looks_like_error, truncate_tool_result, truncate_tool_results_in_messages

__all__ = [
    "Summarizer",
    "MessageGroup",
    "OptimizeResult",
    "ContextManager",
    "SUMMARY_HEADING",
    "build_quick_summary",
    "compress_messages",
    "group_messages",
]

LOGGER = logging.getLogger(__name__)

SUMMARY_HEADING = "## Previous Conversation Summary"
_SUMMARY_FOOTER = "---\nContinue based on the above context."
_MAX_USER_REQUESTS = 5
_MAX_REQUEST_CHARS = 150
_MAX_FILE_OPERATIONS = 15

TOOL_OUTPUT_REMOVED = "[Tool output removed to save context]"
CONTENT_TRUNCATED = "\n...[Content truncated]...\n"


class Summarizer(Protocol):
    """Produces conversation summaries in the background."""

    @property
    def summary(self) -> str | None:
        """Most recent finished summary, if any."""
        ...

    def request_compaction(self, messages: Sequence[Message], previous_summary: str | None) -> None:
        """Schedule summarization without blocking the caller."""
        ...


@dataclass(slots=True)
class MessageGroup:
    """Indices of one conversational turn within a message list."""

    user_index: int | None
    assistant_indices: list[int] = field(default_factory=list)
    tool_indices: list[int] = field(default_factory=list)
    tokens: int = 0

    @property
    def indices(self) -> list[int]:
        head = [] if self.user_index is None else [self.user_index]
        return sorted(head + self.assistant_indices + self.tool_indices)


@dataclass(slots=True)
class OptimizeResult:
    """Output of one optimization pass."""

    messages: list[Message]
    system_prompt: str | None
    summary: str | None
    stats: ContextStats


def group_messages(messages: Sequence[Message]) -> list[MessageGroup]:
    """Split ``messages`` into turns that start at each user message.

    Assistant and tool messages before the first user message form a
    leading group of their own.
    """
    groups: list[MessageGroup] = []
    current: MessageGroup | None = None
    for index, message in enumerate(messages):
        tokens = estimate_message_tokens(message)
        if message.role is MessageRole.USER:
            if current is not None:
                groups.append(current)
            current = MessageGroup(user_index=index, tokens=tokens)
            continue
        if message.role is MessageRole.CHECKPOINT:
            continue
        if current is None:
            current = MessageGroup(user_index=None)
        if message.role is MessageRole.ASSISTANT:
            current.assistant_indices.append(index)
        else:
            current.tool_indices.append(index)
        current.tokens += tokens
    if current is not None:
        groups.append(current)
    return groups


class ContextManager:
    """Keeps a conversation within its token budget.

    Example:
        manager = ContextManager(ContextConfig(max_tokens=20_000))
        result = manager.optimize(history, system_prompt="You are helpful.")
        send(result.system_prompt, result.messages)
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        *,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._config = config or ContextConfig()
        self._summarizer = summarizer
        self._summary: str | None = None
        self._last_stats: ContextStats | None = None

    # ------------------------------------------------------------------
    # Summary state
    # ------------------------------------------------------------------

    @property
    def config(self) -> ContextConfig:
        return self._config

    @property
    def summary(self) -> str | None:
        return self._summary

    @property
    def last_stats(self) -> ContextStats | None:
        return self._last_stats

    def set_summary(self, summary: str | None) -> None:
        self._summary = summary or None

    def clear_summary(self) -> None:
        self._summary = None

    def should_compact(self, messages: Sequence[Message], system_prompt: str | None = None) -> bool:
        return self._estimate(messages, system_prompt) > self._config.max_tokens

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def optimize(self, messages: Sequence[Message], system_prompt: str | None = None) -> OptimizeResult:
        """Trim ``messages`` to the budget and return the result with stats."""
        cfg = self._config
        history = [message for message in messages if message.role is not MessageRole.CHECKPOINT]
        original_tokens = self._estimate(history, system_prompt)
        groups = group_messages(history)

        if original_tokens <= cfg.max_tokens:
            kept = truncate_tool_results_in_messages(history, cfg)
            final_tokens = self._estimate(kept, system_prompt)
            stats = ContextStats(
                original_tokens=original_tokens,
                final_tokens=final_tokens,
                saved_percent=_saved_percent(original_tokens, final_tokens),
                kept_turns=len(groups),
                compacted_turns=0,
            )
            self._last_stats = stats
            return OptimizeResult(messages=kept, system_prompt=system_prompt, summary=self._summary, stats=stats)

        keep_turns = min(cfg.keep_recent_turns, len(groups))
        recent_groups = groups[len(groups) - keep_turns:] if keep_turns else []
        older_groups = groups[: len(groups) - keep_turns]

        if older_groups:
            self._refresh_summary(history, older_groups)

        kept_indices: set[int] = set()
        for group in recent_groups:
            kept_indices.update(group.indices)
        kept: list[Message] = []
        for index, message in enumerate(history):
            if index not in kept_indices:
                continue
            if message.role is MessageRole.TOOL:
                shortened = truncate_tool_result(message.text, message.name or "", cfg)
                if shortened != message.text:
                    message = replace(message, content=shortened)
            kept.append(message)

        enhanced_prompt = self._with_summary(system_prompt)
        final_tokens = self._estimate(kept, enhanced_prompt)
        stats = ContextStats(
            original_tokens=original_tokens,
            final_tokens=final_tokens,
            saved_percent=_saved_percent(original_tokens, final_tokens),
            kept_turns=keep_turns,
            compacted_turns=len(older_groups),
        )
        self._last_stats = stats
        LOGGER.info(
            "Context optimized: %d -> %d tokens (saved %d%%), kept %d turns, compacted %d turns",
            original_tokens,
            final_tokens,
            stats.saved_percent,
            keep_turns,
            len(older_groups),
        )
        return OptimizeResult(messages=kept, system_prompt=enhanced_prompt, summary=self._summary, stats=stats)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refresh_summary(self, history: Sequence[Message], older_groups: Sequence[MessageGroup]) -> None:
        if self._summarizer is not None:
            fresh = self._summarizer.summary
            if fresh:
                self._summary = fresh
            try:
                self._summarizer.request_compaction(history, self._summary)
            except Exception:
                LOGGER.debug("Summarizer request failed; keeping previous summary", exc_info=True)
        if not self._summary:
            self._summary = build_quick_summary(history, older_groups, important_tools=self._config.important_tools)

    def _with_summary(self, system_prompt: str | None) -> str | None:
        if not self._summary:
            return system_prompt
        block = f"{SUMMARY_HEADING}\n{self._summary}\n\n{_SUMMARY_FOOTER}"
        if not system_prompt:
            return block
        return f"{system_prompt}\n\n{block}"

    @staticmethod
    def _estimate(messages: Sequence[Message], system_prompt: str | None) -> int:
        total = sum(estimate_message_tokens(message) for message in messages)
        if system_prompt:
            total += estimate_message_tokens({"role": "system", "content": system_prompt})
        return total


def build_quick_summary(
    messages: Sequence[Message],
    groups: Sequence[MessageGroup],
    *,
    important_tools: frozenset[str],
) -> str:
    """Summarize turns locally, without a model call."""
    user_requests: list[str] = []
    file_operations: list[str] = []
    tools_used: list[str] = []
    error_count = 0

    for group in groups:
        if group.user_index is not None:
            text = messages[group.user_index].text.strip()
            if text:
                first_line = text.splitlines()[0]
                if len(first_line) > _MAX_REQUEST_CHARS:
                    first_line = first_line[:_MAX_REQUEST_CHARS] + "..."
                user_requests.append(first_line)
        for index in group.assistant_indices:
            for call in messages[index].tool_calls:
                if call.name not in tools_used:
                    tools_used.append(call.name)
                path = call.arguments.get("path") if isinstance(call.arguments, Mapping) else None
                if call.name in important_tools and path:
                    operation = f"{call.name}: {path}"
                    if operation not in file_operations:
                        file_operations.append(operation)
        for index in group.tool_indices:
            if looks_like_error(messages[index].text[:200]):
                error_count += 1

    parts: list[str] = []
    if user_requests:
        listed = "\n".join(
            f"{number}. {request}" for number, request in enumerate(user_requests[:_MAX_USER_REQUESTS], start=1)
        )
        parts.append(f"**User Requests ({len(user_requests)}):**\n{listed}")
    if file_operations:
        parts.append("**File Operations:**\n" + "\n".join(file_operations[:_MAX_FILE_OPERATIONS]))
    if tools_used:
        parts.append(f"**Tools Used:** {', '.join(tools_used)}")
    if error_count:
        parts.append(f"**Errors Encountered:** {error_count} error(s)")
    return "\n\n".join(parts) or "Previous conversation context (details compacted)"


def compress_messages(
    messages: list[MutableMapping[str, Any]],
    threshold_chars: int,
    *,
    protected_user_turns: int = 3,
) -> int:
    """Shrink old tool outputs and long assistant text in place.

    Works on chat-completion dictionaries. Nothing at or after the
    ``protected_user_turns``-th most recent user message is touched. Returns
    the number of messages that were rewritten.
    """
    total_chars = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total_chars += len(content)
        elif isinstance(content, list):
            total_chars += 1000
    if total_chars <= threshold_chars:
        return 0

    cutoff = len(messages)
    seen_users = 0
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].get("role") == "user":
            seen_users += 1
            if seen_users == protected_user_turns:
                cutoff = index
                break
    if seen_users < protected_user_turns:
        return 0

    changed = 0
    for message in messages[:cutoff]:
        content = message.get("content")
        if not isinstance(content, str):
            continue
        role = message.get("role")
        if role == "tool" and len(content) > 100:
            message["content"] = TOOL_OUTPUT_REMOVED
            changed += 1
        elif role == "assistant" and len(content) > 500 and not message.get("tool_calls"):
            message["content"] = content[:200] + CONTENT_TRUNCATED + content[-200:]
            changed += 1
    if changed:
        LOGGER.info(
            "Context size %d exceeds %d chars; compressed %d message(s)", total_chars, threshold_chars, changed
        )
    return changed


def _saved_percent(original: int, final: int) -> int:
    if original <= 0:
        return 0
    return round((1 - final / original) * 100)
