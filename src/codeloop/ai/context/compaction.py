"""Model-backed conversation summaries produced in the background.

:class:`CompactionService` implements the :class:`~.manager.Summarizer`
protocol. ``request_compaction`` schedules at most one summarization task at
a time and returns immediately; the finished summary becomes visible through
:attr:`CompactionService.summary` on a later optimization pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

from ..messages import Message, MessageRole
from ..orchestration.stream import ModelClient, assemble
from .estimator import estimate_tokens

__all__ = ["CompactionService", "build_compaction_prompt", "COMPACTION_SYSTEM_PROMPT", "MAX_SUMMARY_CHARS"]

LOGGER = logging.getLogger(__name__)

COMPACTION_SYSTEM_PROMPT = "Summarize conversations concisely. Output only the summary."
MAX_SUMMARY_CHARS = 2000

_ROLE_LABELS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.TOOL: "Tool",
}


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _describe(message: Message) -> str:
    label = _ROLE_LABELS.get(message.role, "Tool")
    text = message.text
    if message.role is MessageRole.TOOL:
        return f"[{label}]: {_clip(text, 200)}"
    if message.role is MessageRole.ASSISTANT and message.tool_calls:
        names = ", ".join(call.name for call in message.tool_calls)
        return f"[{label}] Used: {names}. {text[:300]}"
    return f"[{label}]: {_clip(text, 500)}"


def build_compaction_prompt(messages: Sequence[Message], previous_summary: str | None = None) -> str:
    """Prompt asking the model to fold ``messages`` into a running summary."""
    conversation = "\n\n".join(_describe(message) for message in messages)
    existing = f"\n\nPrevious Summary:\n{previous_summary}\n" if previous_summary else ""
    return (
        f"Summarize this conversation (max {MAX_SUMMARY_CHARS} chars).{existing}\n"
        "Focus on: user goals, key decisions, modified files, errors.\n\n"
        f"Conversation:\n{conversation}\n\n"
        "Summary:"
    )


class CompactionService:
    """Summarizer driven by a :class:`ModelClient`.

    Example:
        service = CompactionService(client, keep_recent_turns=3)
        manager = ContextManager(config, summarizer=service)
    """

    def __init__(self, client: ModelClient, *, keep_recent_turns: int = 3) -> None:
        self._client = client
        self._keep_count = max(0, keep_recent_turns) * 2
        self._summary: str | None = None
        self._compacted_ids: set[str] = set()
        self._last_compacted_at: float | None = None
        self._task: asyncio.Task[str | None] | None = None

    # ------------------------------------------------------------------
    # Summarizer protocol
    # ------------------------------------------------------------------

    @property
    def summary(self) -> str | None:
        return self._summary

    @property
    def is_compacting(self) -> bool:
        return self._task is not None and not self._task.done()

    def request_compaction(self, messages: Sequence[Message], previous_summary: str | None = None) -> None:
        """Schedule a summary of ``messages``; a request in flight absorbs this one."""
        if self.is_compacting:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; compaction request dropped")
            return
        snapshot = [message for message in messages if message.role is not MessageRole.CHECKPOINT]
        self._task = loop.create_task(self._compact(snapshot, previous_summary or self._summary))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait(self) -> str | None:
        """Wait for the in-flight request, if any, and return the summary."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)
        return self._summary

    async def force_compaction(self, messages: Sequence[Message]) -> str | None:
        """Forget what was compacted and summarize ``messages`` now."""
        await self.wait()
        self._compacted_ids.clear()
        return await self._compact(list(messages), self._summary)

    def restore(self, summary: str | None) -> None:
        self._summary = summary or None

    def clear_summary(self) -> None:
        self._summary = None
        self._compacted_ids.clear()
        self._last_compacted_at = None

    def reset(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.clear_summary()

    async def aclose(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def stats(self) -> dict[str, Any]:
        return {
            "last_compacted_at": self._last_compacted_at,
            "compacted_message_count": len(self._compacted_ids),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _compact(self, messages: list[Message], previous_summary: str | None) -> str | None:
        if len(messages) <= self._keep_count:
            return self._summary
        to_compact = messages[: len(messages) - self._keep_count] if self._keep_count else messages
        fresh = [message for message in to_compact if message.id not in self._compacted_ids]
        if not fresh and self._summary:
            return self._summary

        LOGGER.info("Compacting %d messages", len(fresh))
        prompt = build_compaction_prompt(fresh, previous_summary)
        summary = await self._call_model(prompt)
        if not summary:
            return None

        self._summary = summary
        self._last_compacted_at = time.time()
        self._compacted_ids.update(message.id for message in to_compact)
        original = estimate_tokens("".join(message.text for message in to_compact))
        LOGGER.info("Compaction saved ~%d tokens", original - estimate_tokens(summary))
        return summary

    async def _call_model(self, prompt: str) -> str | None:
        stream = self._client.stream_turn(
            [{"role": "user", "content": prompt}],
            [],
            system_prompt=COMPACTION_SYSTEM_PROMPT,
        )
        turn = await assemble(stream)
        if turn.error is not None:
            LOGGER.warning("Compaction model call failed: %s", turn.error.message)
            return None
        text = turn.text.strip()
        if not text:
            return None
        if len(text) > MAX_SUMMARY_CHARS:
            text = text[:MAX_SUMMARY_CHARS] + "..."
        return text
