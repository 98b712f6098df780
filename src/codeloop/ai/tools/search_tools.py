"""Text search across the workspace and within a single file."""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from ..orchestration.tools.types import ToolContext, ToolResult
from .args import SearchFilesArgs, SearchInFileArgs
from .filesystem import IGNORED_DIRECTORIES, FileSystem, resolve_path

__all__ = ["SearchFilesTool", "SearchInFileTool", "build_matcher"]

LOGGER = logging.getLogger(__name__)

MAX_FILE_RESULTS = 50
MAX_IN_FILE_RESULTS = 100
MAX_SEARCH_FILE_BYTES = 1_000_000


def build_matcher(pattern: str, is_regex: bool) -> Callable[[str], bool]:
    """Case-insensitive line predicate. Invalid regexes match nothing."""
    if is_regex:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error:
            LOGGER.debug("Invalid search regex: %s", pattern)
            return lambda _line: False
        return lambda line: compiled.search(line) is not None
    needle = pattern.lower()
    return lambda line: needle in line.lower()


@dataclass(slots=True)
class SearchFilesTool:
    """Grep-style search below a directory, first 50 matches."""

    file_system: FileSystem
    ignored_directories: frozenset[str] = IGNORED_DIRECTORIES
    max_results: int = MAX_FILE_RESULTS

    async def run(self, args: SearchFilesArgs, context: ToolContext) -> ToolResult:
        root = resolve_path(args.path, context.workspace_path)
        if await self.file_system.read_dir(root) is None:
            return ToolResult.fail(f"Directory not found: {root}")
        matches = build_matcher(args.pattern, args.is_regex)
        display_root = context.workspace_path or root

        results: list[str] = []
        async for path in self._walk(root):
            if args.file_pattern and not fnmatch.fnmatch(os.path.basename(path), args.file_pattern):
                continue
            size = await self.file_system.size(path)
            if size is not None and size > MAX_SEARCH_FILE_BYTES:
                continue
            content = await self.file_system.read_file(path)
            if content is None:
                continue
            shown = os.path.relpath(path, display_root).replace(os.sep, "/")
            for number, line in enumerate(content.split("\n"), start=1):
                if matches(line):
                    results.append(f"{shown}:{number}: {line.strip()}")
                    if len(results) >= self.max_results:
                        return ToolResult.ok("\n".join(results))
        return ToolResult.ok("\n".join(results) or "No matches found")

    async def _walk(self, directory: str) -> AsyncIterator[str]:
        entries = await self.file_system.read_dir(directory)
        for entry in sorted(entries or (), key=lambda item: item.name):
            if entry.name.startswith(".") or entry.name in self.ignored_directories:
                continue
            child = os.path.join(directory, entry.name)
            if entry.is_dir:
                async for nested in self._walk(child):
                    yield nested
            else:
                yield child


@dataclass(slots=True)
class SearchInFileTool:
    file_system: FileSystem

    async def run(self, args: SearchInFileArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        content = await self.file_system.read_file(path)
        if content is None:
            return ToolResult.fail(f"File not found: {path}")
        matches = build_matcher(args.pattern, args.is_regex)
        found = [
            f"{number}: {line.strip()}"
            for number, line in enumerate(content.split("\n"), start=1)
            if matches(line)
        ]
        if not found:
            return ToolResult.ok(f'No matches found for "{args.pattern}"')
        return ToolResult.ok(f"Found {len(found)} matches:\n" + "\n".join(found[:MAX_IN_FILE_RESULTS]))
