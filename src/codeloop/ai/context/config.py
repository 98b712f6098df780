"""Context budget configuration and statistics."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

__all__ = [
    "ContextConfig",
    "ContextStats",
    "DEFAULT_IMPORTANT_TOOLS",
    "DEFAULT_READ_ONLY_TOOLS",
]

DEFAULT_IMPORTANT_TOOLS: frozenset[str] = frozenset(
    {
        "edit_file",
        "write_file",
        "replace_file_content",
        "create_file_or_folder",
        "delete_file_or_folder",
    }
)

DEFAULT_READ_ONLY_TOOLS: frozenset[str] = frozenset(
    {
        "read_file",
        "list_directory",
        "get_dir_tree",
        "search_files",
        "search_in_file",
        "read_multiple_files",
        "get_lint_errors",
        "read_url",
    }
)


@dataclass(slots=True, frozen=True)
class ContextConfig:
    """Budget knobs for context optimization.

    Attributes:
        max_tokens: Estimated token budget for the whole history.
        keep_recent_turns: Turns always kept verbatim when compacting.
        max_tool_result_chars: Character budget for one tool result.
        important_tools: Tools whose results get the full budget.
        read_only_tools: Tools whose results get half the budget.
    """

    max_tokens: int = 100_000
    keep_recent_turns: int = 5
    max_tool_result_chars: int = 8_000
    important_tools: frozenset[str] = DEFAULT_IMPORTANT_TOOLS
    read_only_tools: frozenset[str] = DEFAULT_READ_ONLY_TOOLS

    def with_tools(
        self,
        *,
        important: Iterable[str] | None = None,
        read_only: Iterable[str] | None = None,
    ) -> "ContextConfig":
        """Return a copy with tool classifications replaced."""
        return replace(
            self,
            important_tools=frozenset(important) if important is not None else self.important_tools,
            read_only_tools=frozenset(read_only) if read_only is not None else self.read_only_tools,
        )


@dataclass(slots=True, frozen=True)
class ContextStats:
    """Before/after numbers for one optimization pass. Observability only."""

    original_tokens: int = 0
    final_tokens: int = 0
    saved_percent: int = 0
    kept_turns: int = 0
    compacted_turns: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "original_tokens": self.original_tokens,
            "final_tokens": self.final_tokens,
            "saved_percent": self.saved_percent,
            "kept_turns": self.kept_turns,
            "compacted_turns": self.compacted_turns,
        }
        if self.extra:
            data.update(self.extra)
        return data
