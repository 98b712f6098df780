"""SEARCH/REPLACE block parsing and application for ``edit_file``.

Blocks use the conflict-marker format::

    <<<<<<< SEARCH
    old text
    =======
    new text
    >>>>>>> REPLACE

Each block replaces the first exact occurrence of its search text. When
there is none, a line-wise match that ignores leading and trailing
whitespace is tried before the block is reported as not found.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from typing import Sequence

__all__ = [
    "SearchReplaceBlock",
    "ApplyResult",
    "parse_search_replace_blocks",
    "apply_search_replace_blocks",
    "calculate_line_changes",
]

_BLOCK_PATTERN = re.compile(
    r"<{7}\s*SEARCH[ \t]*\n(.*?)\n?={7}[ \t]*\n(.*?)\n?>{7}\s*REPLACE",
    re.DOTALL,
)


@dataclass(slots=True, frozen=True)
class SearchReplaceBlock:
    search: str
    replace: str


@dataclass(slots=True)
class ApplyResult:
    new_content: str
    applied: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_search_replace_blocks(text: str) -> list[SearchReplaceBlock]:
    """Extract blocks from ``text``; blocks with empty search text are ignored."""
    normalized = (text or "").replace("\r\n", "\n")
    blocks: list[SearchReplaceBlock] = []
    for match in _BLOCK_PATTERN.finditer(normalized):
        search, replacement = match.group(1), match.group(2)
        if not search.strip():
            continue
        blocks.append(SearchReplaceBlock(search=search, replace=replacement))
    return blocks


def apply_search_replace_blocks(content: str, blocks: Sequence[SearchReplaceBlock]) -> ApplyResult:
    """Apply ``blocks`` in order. Failed blocks are reported and skipped."""
    result = ApplyResult(new_content=content)
    for number, block in enumerate(blocks, start=1):
        current = result.new_content
        if block.search in current:
            result.new_content = current.replace(block.search, block.replace, 1)
            result.applied += 1
            continue
        fuzzy = _replace_normalized(current, block)
        if fuzzy is None:
            result.errors.append(f"Block {number}: search text not found")
            continue
        result.new_content = fuzzy
        result.applied += 1
    return result


def calculate_line_changes(old: str, new: str) -> tuple[int, int]:
    """Return ``(added, removed)`` line counts between ``old`` and ``new``."""
    added = removed = 0
    for line in difflib.ndiff(old.splitlines(), new.splitlines()):
        if line.startswith("+ "):
            added += 1
        elif line.startswith("- "):
            removed += 1
    return added, removed


def _replace_normalized(content: str, block: SearchReplaceBlock) -> str | None:
    lines = content.split("\n")
    wanted = [line.strip() for line in block.search.strip("\n").split("\n")]
    size = len(wanted)
    if size == 0:
        return None
    for start in range(0, len(lines) - size + 1):
        window = lines[start:start + size]
        if [line.strip() for line in window] == wanted:
            replacement = block.replace.split("\n") if block.replace else []
            return "\n".join(lines[:start] + replacement + lines[start + size:])
    return None
