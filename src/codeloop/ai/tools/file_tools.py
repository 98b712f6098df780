"""Workspace file tools: reading, listing and editing files."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..orchestration.tools.types import ToolContext, ToolResult
from .args import (
    CreateFileOrFolderArgs,
    DeleteFileOrFolderArgs,
    EditFileArgs,
    GetDirTreeArgs,
    ListDirectoryArgs,
    ReadFileArgs,
    ReadMultipleFilesArgs,
    ReplaceFileContentArgs,
    WriteFileArgs,
)
from .errors import ReadBeforeWriteError, ToolError
from .filesystem import IGNORED_DIRECTORIES, DirEntry, FileSystem, resolve_path
from .search_replace import apply_search_replace_blocks, calculate_line_changes, parse_search_replace_blocks

__all__ = [
    "ReadFileTool",
    "ListDirectoryTool",
    "DirTreeTool",
    "ReadMultipleFilesTool",
    "EditFileTool",
    "WriteFileTool",
    "ReplaceFileContentTool",
    "CreateFileOrFolderTool",
    "DeleteFileOrFolderTool",
    "format_dir_tree",
]

LOGGER = logging.getLogger(__name__)

WRITE_FAILED = "Failed to write file"


def _entry_icon(entry: DirEntry) -> str:
    return "📁" if entry.is_dir else "📄"


def _sorted_entries(entries: list[DirEntry]) -> list[DirEntry]:
    return sorted(entries, key=lambda entry: (not entry.is_dir, entry.name.lower()))


def _change_meta(path: str, old: str, new: str, **extra: object) -> dict[str, object]:
    added, removed = calculate_line_changes(old, new)
    meta: dict[str, object] = {
        "file_path": path,
        "old_content": old,
        "new_content": new,
        "lines_added": added,
        "lines_removed": removed,
    }
    meta.update(extra)
    return meta


# -----------------------------------------------------------------------------
# Read tools
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ReadFileTool:
    """Return numbered file lines and mark the file as read."""

    file_system: FileSystem

    async def run(self, args: ReadFileArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        content = await self.file_system.read_file(path)
        if content is None:
            return ToolResult.fail(f"File not found: {path}")
        context.session.mark_read(path)

        lines = content.split("\n")
        start = max(1, args.start_line) if args.start_line is not None else 1
        end = min(len(lines), args.end_line) if args.end_line is not None else len(lines)
        numbered = "\n".join(f"{start + offset}: {line}" for offset, line in enumerate(lines[start - 1:end]))
        return ToolResult.ok(numbered, file_path=path)


@dataclass(slots=True)
class ListDirectoryTool:
    file_system: FileSystem

    async def run(self, args: ListDirectoryArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        entries = await self.file_system.read_dir(path)
        if entries is None:
            return ToolResult.fail(f"Directory not found: {path}")
        listing = "\n".join(f"{_entry_icon(entry)} {entry.name}" for entry in _sorted_entries(entries))
        return ToolResult.ok(listing)


@dataclass(slots=True)
class _TreeNode:
    name: str
    is_dir: bool
    children: list[_TreeNode] = field(default_factory=list)


def format_dir_tree(nodes: list[_TreeNode], prefix: str = "") -> str:
    """Render tree nodes with box-drawing connectors."""
    lines: list[str] = []
    for index, node in enumerate(nodes):
        last = index == len(nodes) - 1
        connector = "└── " if last else "├── "
        icon = "📁 " if node.is_dir else "📄 "
        lines.append(f"{prefix}{connector}{icon}{node.name}\n")
        if node.children:
            lines.append(format_dir_tree(node.children, prefix + ("    " if last else "│   ")))
    return "".join(lines)


@dataclass(slots=True)
class DirTreeTool:
    """Recursive directory tree, skipping hidden entries and build output."""

    file_system: FileSystem
    ignored_directories: frozenset[str] = IGNORED_DIRECTORIES

    async def run(self, args: GetDirTreeArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        if await self.file_system.read_dir(path) is None:
            return ToolResult.fail(f"Directory not found: {path}")
        tree = await self._build(path, max(1, args.max_depth), 0)
        return ToolResult.ok(format_dir_tree(tree))

    async def _build(self, path: str, max_depth: int, depth: int) -> list[_TreeNode]:
        if depth >= max_depth:
            return []
        entries = await self.file_system.read_dir(path)
        if not entries:
            return []
        nodes: list[_TreeNode] = []
        for entry in _sorted_entries(entries):
            if entry.name.startswith(".") and entry.name != ".env":
                continue
            if entry.name in self.ignored_directories:
                continue
            node = _TreeNode(entry.name, entry.is_dir)
            if entry.is_dir and depth < max_depth - 1:
                node.children = await self._build(f"{path.rstrip('/')}/{entry.name}", max_depth, depth + 1)
            nodes.append(node)
        return nodes


@dataclass(slots=True)
class ReadMultipleFilesTool:
    file_system: FileSystem

    async def run(self, args: ReadMultipleFilesArgs, context: ToolContext) -> ToolResult:
        sections: list[str] = []
        for requested in args.paths:
            try:
                path = resolve_path(requested, context.workspace_path)
            except ToolError as exc:
                sections.append(f"\n--- File: {requested} ---\n[Error: {exc.message}]\n")
                continue
            content = await self.file_system.read_file(path)
            if content is None:
                sections.append(f"\n--- File: {requested} ---\n[File not found]\n")
                continue
            context.session.mark_read(path)
            sections.append(f"\n--- File: {requested} ---\n{content}\n")
        return ToolResult.ok("".join(sections))


# -----------------------------------------------------------------------------
# Write tools
# -----------------------------------------------------------------------------


def _require_read(path: str, context: ToolContext) -> None:
    if not context.session.has_read(path):
        raise ReadBeforeWriteError(path=path)


@dataclass(slots=True)
class EditFileTool:
    """Apply SEARCH/REPLACE blocks to a file that was read in this session."""

    file_system: FileSystem

    async def run(self, args: EditFileArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        _require_read(path, context)

        original = await self.file_system.read_file(path)
        if original is None:
            return ToolResult.fail(f"File not found: {path}")

        blocks = parse_search_replace_blocks(args.search_replace_blocks)
        if not blocks:
            return ToolResult.fail("No valid SEARCH/REPLACE blocks found.")

        applied = apply_search_replace_blocks(original, blocks)
        if applied.errors:
            return ToolResult.fail("\n".join(applied.errors))

        if not await self.file_system.write_file(path, applied.new_content):
            return ToolResult.fail(WRITE_FAILED)
        return ToolResult.ok("File updated successfully", **_change_meta(path, original, applied.new_content))


@dataclass(slots=True)
class WriteFileTool:
    file_system: FileSystem

    async def run(self, args: WriteFileArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        original = await self.file_system.read_file(path) or ""
        if not await self.file_system.write_file(path, args.content):
            return ToolResult.fail(WRITE_FAILED)
        context.session.mark_read(path)
        return ToolResult.ok("File written successfully", **_change_meta(path, original, args.content))


@dataclass(slots=True)
class ReplaceFileContentTool:
    """Replace an inclusive, 1-based line range."""

    file_system: FileSystem

    async def run(self, args: ReplaceFileContentArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        _require_read(path, context)
        if args.start_line > args.end_line:
            return ToolResult.fail("start_line must be <= end_line")

        original = await self.file_system.read_file(path)
        if original is None:
            return ToolResult.fail(f"File not found: {path}")

        if original == "":
            if not await self.file_system.write_file(path, args.content):
                return ToolResult.fail(WRITE_FAILED)
            return ToolResult.ok("File written (was empty)", **_change_meta(path, "", args.content))

        lines = original.split("\n")
        start = max(1, args.start_line)
        lines[start - 1:args.end_line] = args.content.split("\n")
        updated = "\n".join(lines)
        if not await self.file_system.write_file(path, updated):
            return ToolResult.fail(WRITE_FAILED)
        return ToolResult.ok("File updated successfully", **_change_meta(path, original, updated))


@dataclass(slots=True)
class CreateFileOrFolderTool:
    file_system: FileSystem

    async def run(self, args: CreateFileOrFolderArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        if args.is_folder:
            if await self.file_system.mkdir(path):
                return ToolResult.ok("Folder created", file_path=path)
            return ToolResult.fail("Failed to create folder")
        if not await self.file_system.write_file(path, args.content):
            return ToolResult.fail("Failed to create file")
        context.session.mark_read(path)
        return ToolResult.ok("File created", **_change_meta(path, "", args.content, is_new_file=True))


@dataclass(slots=True)
class DeleteFileOrFolderTool:
    file_system: FileSystem

    async def run(self, args: DeleteFileOrFolderArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        if not args.recursive and await self.file_system.read_dir(path):
            return ToolResult.fail(f"Directory not empty: {path} (set recursive=true to delete it)")
        if await self.file_system.delete_file(path):
            return ToolResult.ok("Deleted successfully", file_path=path)
        return ToolResult.fail("Failed to delete")
