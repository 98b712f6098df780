"""Content-aware truncation for tool results and long message bodies."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Sequence

from ..messages import Message, MessageRole
from .config import ContextConfig

__all__ = [
    "FILE_READ_TOOLS",
    "SEARCH_TOOLS",
    "ERROR_WINDOW",
    "tool_result_budget",
    "looks_like_error",
    "truncate_tool_result",
    "truncate_message",
    "truncate_tool_results_in_messages",
]

LOGGER = logging.getLogger(__name__)

FILE_READ_TOOLS: frozenset[str] = frozenset({"read_file", "read_multiple_files"})
SEARCH_TOOLS: frozenset[str] = frozenset(
    {"search_files", "codebase_search", "list_directory", "search_in_file", "get_dir_tree"}
)

ERROR_WINDOW = 500
_ERROR_PATTERN = re.compile(r"error|failed|exception|denied", re.IGNORECASE)
_ERROR_SLACK = 1.5


def tool_result_budget(tool_name: str, config: ContextConfig) -> int:
    """Character budget for a tool's result."""
    if tool_name in config.important_tools:
        return config.max_tool_result_chars
    if tool_name in config.read_only_tools:
        return config.max_tool_result_chars // 2
    return config.max_tool_result_chars


def looks_like_error(content: str) -> bool:
    return bool(_ERROR_PATTERN.search(content[:ERROR_WINDOW]))


def truncate_tool_result(content: str, tool_name: str, config: ContextConfig | None = None) -> str:
    """Shrink a tool result to its budget.

    Content within budget is returned unchanged, as is error-looking content
    up to 1.5x the budget. Otherwise the strategy depends on the tool:
    file reads keep head and tail, search-style tools keep whole leading
    lines, and everything else keeps a long head and a short tail.
    """
    if not content:
        return content
    cfg = config or ContextConfig()
    budget = tool_result_budget(tool_name, cfg)
    if len(content) <= budget:
        return content

    if looks_like_error(content) and len(content) <= budget * _ERROR_SLACK:
        return content

    if tool_name in FILE_READ_TOOLS:
        head_size = int(budget * 0.6)
        tail_size = int(budget * 0.3)
        omitted = len(content) - head_size - tail_size
        return f"{content[:head_size]}\n\n... [{omitted} characters omitted] ...\n\n{_tail(content, tail_size)}"

    if tool_name in SEARCH_TOOLS:
        return _truncate_lines(content, budget)

    head_size = int(budget * 0.8)
    tail_size = int(budget * 0.15)
    return f"{content[:head_size]}\n\n... [truncated] ...\n\n{_tail(content, tail_size)}"


def truncate_message(content: str, max_chars: int = 2000, preserve_ends: bool = True) -> str:
    if len(content) <= max_chars:
        return content
    if preserve_ends:
        head_size = int(max_chars * 0.6)
        tail_size = int(max_chars * 0.3)
        return f"{content[:head_size]}\n...[truncated]...\n{_tail(content, tail_size)}"
    return content[:max_chars] + "...[truncated]"


def truncate_tool_results_in_messages(
    messages: Sequence[Message],
    config: ContextConfig | None = None,
) -> list[Message]:
    """Return ``messages`` with every tool result truncated to its budget.

    Messages that need no change are returned as the same objects.
    """
    cfg = config or ContextConfig()
    result: list[Message] = []
    for message in messages:
        if message.role is not MessageRole.TOOL:
            result.append(message)
            continue
        text = message.text
        shortened = truncate_tool_result(text, message.name or "", cfg)
        if shortened == text:
            result.append(message)
            continue
        LOGGER.debug(
            "Truncated %s result %s from %d to %d chars",
            message.name,
            message.tool_call_id,
            len(text),
            len(shortened),
        )
        result.append(replace(message, content=shortened))
    return result


def _truncate_lines(content: str, budget: int) -> str:
    lines = content.split("\n")
    kept: list[str] = []
    size = 0
    for line in lines:
        if size + len(line) > budget:
            break
        kept.append(line)
        size += len(line) + 1
    result = "".join(f"{line}\n" for line in kept)
    if len(kept) < len(lines):
        result += f"\n... [{len(lines) - len(kept)} more results omitted]"
    return result.strip()


def _tail(content: str, size: int) -> str:
    if size <= 0:
        return ""
    return content[-size:]
