"""File system boundary used by tools and the checkpoint manager.

Every operation reports failure with a sentinel (``None`` or ``False``)
rather than raising, so callers can decide how loud a failure should be.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from .errors import PathOutsideWorkspaceError

__all__ = [
    "DirEntry",
    "FileSystem",
    "LocalFileSystem",
    "SessionFileTracker",
    "resolve_path",
    "normalize_tracked_path",
    "IGNORED_DIRECTORIES",
]

LOGGER = logging.getLogger(__name__)

IGNORED_DIRECTORIES: frozenset[str] = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        ".next",
        "__pycache__",
        ".venv",
        "venv",
        ".cache",
        "coverage",
        ".nyc_output",
        "tmp",
        "temp",
        ".idea",
        ".vscode",
    }
)


@dataclass(slots=True, frozen=True)
class DirEntry:
    name: str
    is_dir: bool


class FileSystem(Protocol):
    """Async file access with sentinel failures."""

    async def read_file(self, path: str) -> str | None:
        ...

    async def write_file(self, path: str, content: str) -> bool:
        ...

    async def delete_file(self, path: str) -> bool:
        ...

    async def read_dir(self, path: str) -> list[DirEntry] | None:
        ...

    async def mkdir(self, path: str) -> bool:
        ...

    async def exists(self, path: str) -> bool:
        ...

    async def size(self, path: str) -> int | None:
        ...


class LocalFileSystem:
    """:class:`FileSystem` over the local disk.

    Blocking calls run in the default executor. Text is read and written as
    UTF-8; undecodable bytes are replaced on read.
    """

    def __init__(self, *, encoding: str = "utf-8") -> None:
        self._encoding = encoding

    async def read_file(self, path: str) -> str | None:
        return await asyncio.to_thread(self._read_file, path)

    async def write_file(self, path: str, content: str) -> bool:
        return await asyncio.to_thread(self._write_file, path, content)

    async def delete_file(self, path: str) -> bool:
        return await asyncio.to_thread(self._delete, path)

    async def read_dir(self, path: str) -> list[DirEntry] | None:
        return await asyncio.to_thread(self._read_dir, path)

    async def mkdir(self, path: str) -> bool:
        return await asyncio.to_thread(self._mkdir, path)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)

    async def size(self, path: str) -> int | None:
        return await asyncio.to_thread(self._size, path)

    # ------------------------------------------------------------------
    # Blocking helpers
    # ------------------------------------------------------------------

    def _read_file(self, path: str) -> str | None:
        target = Path(path)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding=self._encoding, errors="replace")
        except OSError:
            LOGGER.debug("Failed to read %s", path, exc_info=True)
            return None

    def _write_file(self, path: str, content: str) -> bool:
        target = Path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding=self._encoding)
        except OSError:
            LOGGER.debug("Failed to write %s", path, exc_info=True)
            return False
        return True

    def _delete(self, path: str) -> bool:
        target = Path(path)
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError:
            LOGGER.debug("Failed to delete %s", path, exc_info=True)
            return False
        return True

    def _read_dir(self, path: str) -> list[DirEntry] | None:
        target = Path(path)
        if not target.is_dir():
            return None
        try:
            return [DirEntry(child.name, child.is_dir()) for child in target.iterdir()]
        except OSError:
            LOGGER.debug("Failed to list %s", path, exc_info=True)
            return None

    def _mkdir(self, path: str) -> bool:
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError:
            LOGGER.debug("Failed to create directory %s", path, exc_info=True)
            return False
        return True

    def _size(self, path: str) -> int | None:
        try:
            return os.path.getsize(path)
        except OSError:
            return None


def resolve_path(path: str, workspace_path: str | None) -> str:
    """Resolve ``path`` against the workspace and return an absolute path.

    Raises:
        PathOutsideWorkspaceError: ``path`` escapes ``workspace_path``.
    """
    if not workspace_path:
        return os.path.abspath(path)
    root = os.path.abspath(workspace_path)
    candidate = os.path.abspath(os.path.join(root, path))
    try:
        inside = os.path.commonpath([root, candidate]) == root
    except ValueError:
        inside = False
    if not inside:
        raise PathOutsideWorkspaceError(path=path)
    return candidate


def normalize_tracked_path(path: str) -> str:
    return path.replace("\\", "/").lower()


class SessionFileTracker:
    """Remembers which files the model has read during a session."""

    def __init__(self, paths: Iterable[str] = ()) -> None:
        self._read: set[str] = {normalize_tracked_path(path) for path in paths}

    def mark_read(self, path: str) -> None:
        self._read.add(normalize_tracked_path(path))

    def has_read(self, path: str) -> bool:
        return normalize_tracked_path(path) in self._read

    def clear(self) -> None:
        self._read.clear()

    def __len__(self) -> int:
        return len(self._read)
