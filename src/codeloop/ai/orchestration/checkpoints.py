"""File checkpoints for reviewing and rolling back agent edits.

A checkpoint maps absolute file paths to the content they had before the
agent touched them (``None`` meaning the file did not exist). Checkpoints form
a linear history with a current index; creating a checkpoint while rewound
discards everything after the index. The history is persisted per workspace
as ``<workspace>/.codeloop/checkpoints.json``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from ..tools.filesystem import FileSystem

__all__ = [
    "CheckpointType",
    "FileSnapshot",
    "Checkpoint",
    "CheckpointSettings",
    "RollbackResult",
    "ChangeSet",
    "CheckpointListener",
    "CheckpointManager",
    "CHECKPOINT_FILE_NAME",
]

LOGGER = logging.getLogger(__name__)

CHECKPOINT_FILE_NAME = "checkpoints.json"
_SECONDS_PER_DAY = 24 * 60 * 60


# -----------------------------------------------------------------------------
# Checkpoint Types
# -----------------------------------------------------------------------------


class CheckpointType(str, Enum):
    """What triggered a checkpoint."""

    USER_MESSAGE = "user_message"
    TOOL_EDIT = "tool_edit"


@dataclass(slots=True, frozen=True)
class FileSnapshot:
    """Content of one file at snapshot time. ``None`` means it did not exist."""

    content: str | None
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FileSnapshot:
        content = data.get("content")
        return cls(content=content if isinstance(content, str) else None, timestamp=float(data.get("timestamp", 0)))


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Immutable point-in-time snapshot of a set of files.

    Attributes:
        id: Unique identifier.
        type: What triggered the checkpoint.
        timestamp: Creation time, seconds since the epoch.
        snapshots: Absolute path -> :class:`FileSnapshot`.
        description: Free text shown in history views.
        message_id: Id of the user message that started the turn, if any.
    """

    id: str
    type: CheckpointType
    timestamp: float
    snapshots: Mapping[str, FileSnapshot] = field(default_factory=dict)
    description: str = ""
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "snapshots": {path: snapshot.to_dict() for path, snapshot in self.snapshots.items()},
            "description": self.description,
        }
        if self.message_id is not None:
            data["messageId"] = self.message_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        raw_snapshots = data.get("snapshots") or {}
        snapshots = {
            str(path): FileSnapshot.from_dict(snapshot)
            for path, snapshot in raw_snapshots.items()
            if isinstance(snapshot, Mapping)
        }
        return cls(
            id=str(data["id"]),
            type=CheckpointType(data.get("type", CheckpointType.USER_MESSAGE.value)),
            timestamp=float(data.get("timestamp", 0)),
            snapshots=snapshots,
            description=str(data.get("description", "")),
            message_id=data.get("messageId"),
        )


@dataclass(slots=True, frozen=True)
class CheckpointSettings:
    """Retention policy, read from project settings."""

    max_count: int = 50
    max_age_days: float = 7
    max_file_size_kb: float = 100
    max_files_per_checkpoint: int = 20


@dataclass(slots=True)
class RollbackResult:
    success: bool
    restored_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    checkpoint: Checkpoint | None = None


@dataclass(slots=True)
class ChangeSet:
    """Paths that differ between two checkpoints."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)


class CheckpointListener(Protocol):
    """Callback for checkpoint events."""

    def on_checkpoint_created(self, checkpoint: Checkpoint) -> None:
        ...

    def on_checkpoint_restored(self, checkpoint: Checkpoint) -> None:
        ...

    def on_checkpoints_cleared(self) -> None:
        ...


# -----------------------------------------------------------------------------
# Checkpoint Manager
# -----------------------------------------------------------------------------


class CheckpointManager:
    """Creates, persists and restores file checkpoints for one workspace.

    Without a workspace every operation works in memory only. Mutations are
    serialized with an :class:`asyncio.Lock` and retention (max age, max
    count) is enforced after each of them.
    """

    def __init__(
        self,
        file_system: FileSystem,
        settings: CheckpointSettings | None = None,
        *,
        storage_dir: str = ".codeloop",
        listener: CheckpointListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fs = file_system
        self._settings = settings or CheckpointSettings()
        self._storage_dir = storage_dir
        self._listener = listener
        self._clock = clock
        self._checkpoints: list[Checkpoint] = []
        self._current_index = -1
        self._workspace: str | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def settings(self) -> CheckpointSettings:
        return self._settings

    @property
    def workspace_path(self) -> str | None:
        return self._workspace

    @property
    def checkpoints(self) -> list[Checkpoint]:
        return list(self._checkpoints)

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def current(self) -> Checkpoint | None:
        if 0 <= self._current_index < len(self._checkpoints):
            return self._checkpoints[self._current_index]
        return None

    @property
    def storage_path(self) -> Path | None:
        if not self._workspace:
            return None
        return Path(self._workspace) / self._storage_dir / CHECKPOINT_FILE_NAME

    def set_listener(self, listener: CheckpointListener | None) -> None:
        self._listener = listener

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def ensure_loaded(self, workspace_path: str | None) -> None:
        """Load persisted checkpoints for ``workspace_path`` once.

        Switching to another workspace resets the in-memory history first.
        """
        workspace = os.path.abspath(workspace_path) if workspace_path else None
        if self._loaded and workspace == self._workspace:
            return
        if workspace != self._workspace:
            self.reset()
        self._workspace = workspace
        self._loaded = True
        if workspace is None:
            return
        data = await asyncio.to_thread(self._read_storage)
        if data is not None:
            self._checkpoints = data[0]
            self._current_index = data[1]
            LOGGER.info("Loaded %d checkpoint(s) for %s", len(self._checkpoints), workspace)
        removed = self.cleanup_old_checkpoints()
        if removed:
            await self._persist()

    def _read_storage(self) -> tuple[list[Checkpoint], int] | None:
        path = self.storage_path
        if path is None or not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            LOGGER.warning("Ignoring unreadable checkpoint file %s", path, exc_info=True)
            return None
        checkpoints: list[Checkpoint] = []
        for entry in payload.get("checkpoints") or []:
            try:
                checkpoints.append(Checkpoint.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                LOGGER.debug("Skipping malformed checkpoint entry", exc_info=True)
        index = payload.get("currentIdx")
        if not isinstance(index, int):
            index = len(checkpoints) - 1
        index = max(-1, min(index, len(checkpoints) - 1))
        return checkpoints, index

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_checkpoint(
        self,
        checkpoint_type: CheckpointType,
        description: str,
        file_paths: Sequence[str] = (),
        message_id: str | None = None,
    ) -> Checkpoint:
        """Snapshot ``file_paths`` and append a new checkpoint at the index."""
        await self.ensure_loaded(self._workspace)
        async with self._lock:
            limit = self._settings.max_files_per_checkpoint
            paths = list(dict.fromkeys(file_paths))
            if limit >= 0 and len(paths) > limit:
                LOGGER.debug("Checkpoint limited to the last %d of %d files", limit, len(paths))
                paths = paths[len(paths) - limit:] if limit else []

            snapshots: dict[str, FileSnapshot] = {}
            for path in paths:
                absolute = self._absolute(path)
                snapshot = await self._snapshot(absolute)
                if snapshot is not None:
                    snapshots[absolute] = snapshot

            checkpoint = Checkpoint(
                id=uuid.uuid4().hex,
                type=checkpoint_type,
                timestamp=self._clock(),
                snapshots=snapshots,
                description=description,
                message_id=message_id,
            )
            if self._current_index < len(self._checkpoints) - 1:
                discarded = len(self._checkpoints) - self._current_index - 1
                LOGGER.debug("Discarding %d checkpoint(s) after index %d", discarded, self._current_index)
                del self._checkpoints[self._current_index + 1:]
            self._checkpoints.append(checkpoint)
            self._current_index = len(self._checkpoints) - 1
            self._enforce_retention()
            await self._persist()

        LOGGER.debug(
            "Created checkpoint %s: type=%s, files=%d",
            checkpoint.id,
            checkpoint_type.value,
            len(snapshots),
        )
        self._notify("on_checkpoint_created", checkpoint)
        return checkpoint

    async def add_snapshot(self, path: str, content: str | None) -> bool:
        """Record the pre-write ``content`` of ``path`` in the current checkpoint.

        A path already present in the checkpoint keeps its first snapshot.
        Returns True when a snapshot was added.
        """
        async with self._lock:
            current = self.current
            if current is None:
                LOGGER.debug("No checkpoint to attach a snapshot for %s", path)
                return False
            absolute = self._absolute(path)
            if absolute in current.snapshots:
                return False
            if content is not None and self._too_large(content):
                LOGGER.warning("File too large for checkpoint, skipping: %s", absolute)
                return False
            snapshots = dict(current.snapshots)
            snapshots[absolute] = FileSnapshot(content=content, timestamp=self._clock())
            self._checkpoints[self._current_index] = replace(current, snapshots=snapshots)
            self._enforce_retention()
            await self._persist()
        return True

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_to(self, checkpoint_id: str) -> RollbackResult:
        """Restore every file in the checkpoint, continuing past failures."""
        await self.ensure_loaded(self._workspace)
        async with self._lock:
            index = self._index_of(checkpoint_id)
            if index < 0:
                return RollbackResult(success=False, errors=[f"Checkpoint not found: {checkpoint_id}"])
            checkpoint = self._checkpoints[index]
            restored: list[str] = []
            errors: list[str] = []
            for path, snapshot in checkpoint.snapshots.items():
                try:
                    if snapshot.content is None:
                        if not await self._fs.exists(path) or await self._fs.delete_file(path):
                            restored.append(path)
                        else:
                            errors.append(f"Failed to delete: {path}")
                    elif await self._fs.write_file(path, snapshot.content):
                        restored.append(path)
                    else:
                        errors.append(f"Failed to restore: {path}")
                except Exception as exc:
                    LOGGER.debug("Rollback of %s raised", path, exc_info=True)
                    errors.append(f"Error restoring {path}: {exc}")
            self._current_index = index
            await self._persist()

        LOGGER.info(
            "Rolled back to checkpoint %s: %d restored, %d error(s)",
            checkpoint_id,
            len(restored),
            len(errors),
        )
        self._notify("on_checkpoint_restored", checkpoint)
        return RollbackResult(success=not errors, restored_files=restored, errors=errors, checkpoint=checkpoint)

    async def rollback_to_previous(self) -> RollbackResult:
        if self._current_index <= 0:
            return RollbackResult(success=False, errors=["No previous checkpoint available"])
        return await self.rollback_to(self._checkpoints[self._current_index - 1].id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        index = self._index_of(checkpoint_id)
        return self._checkpoints[index] if index >= 0 else None

    def get_checkpoint_by_message_id(self, message_id: str) -> Checkpoint | None:
        for checkpoint in self._checkpoints:
            if checkpoint.message_id == message_id:
                return checkpoint
        return None

    def get_file_at_checkpoint(self, checkpoint_id: str, path: str) -> str | None:
        checkpoint = self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            return None
        snapshot = checkpoint.snapshots.get(self._absolute(path))
        return snapshot.content if snapshot is not None else None

    def get_changes_between(self, from_id: str, to_id: str) -> ChangeSet:
        start = self.get_checkpoint(from_id)
        end = self.get_checkpoint(to_id)
        changes = ChangeSet()
        if start is None or end is None:
            return changes
        for path in sorted(set(start.snapshots) | set(end.snapshots)):
            before = start.snapshots.get(path)
            after = end.snapshots.get(path)
            if before is None and after is not None:
                changes.added.append(path)
            elif before is not None and after is None:
                changes.deleted.append(path)
            elif before is not None and after is not None and before.content != after.content:
                changes.modified.append(path)
        return changes

    # ------------------------------------------------------------------
    # Retention & lifecycle
    # ------------------------------------------------------------------

    def cleanup_old_checkpoints(self) -> int:
        """Drop checkpoints older than ``max_age_days``. Returns how many went."""
        max_age = self._settings.max_age_days * _SECONDS_PER_DAY
        now = self._clock()
        before = len(self._checkpoints)
        current = self.current
        self._checkpoints = [cp for cp in self._checkpoints if now - cp.timestamp < max_age]
        removed = before - len(self._checkpoints)
        if removed:
            LOGGER.info("Cleaned up %d old checkpoint(s)", removed)
            self._current_index = self._reindex(current)
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._checkpoints = []
            self._current_index = -1
            await self._persist()
        self._notify("on_checkpoints_cleared")

    def reset(self) -> None:
        """Forget in-memory state; the next operation reloads from disk."""
        self._checkpoints = []
        self._current_index = -1
        self._loaded = False
        self._workspace = None

    def _enforce_retention(self) -> None:
        self.cleanup_old_checkpoints()
        max_count = max(1, self._settings.max_count)
        if len(self._checkpoints) > max_count:
            dropped = len(self._checkpoints) - max_count
            self._checkpoints = self._checkpoints[dropped:]
            self._current_index = max(-1, self._current_index - dropped)
            LOGGER.debug("Dropped %d checkpoint(s) over the limit of %d", dropped, max_count)

    def _reindex(self, current: Checkpoint | None) -> int:
        if current is not None:
            for index, checkpoint in enumerate(self._checkpoints):
                if checkpoint.id == current.id:
                    return index
        return min(self._current_index, len(self._checkpoints) - 1)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _absolute(self, path: str) -> str:
        if os.path.isabs(path):
            return os.path.normpath(path)
        base = self._workspace or os.getcwd()
        return os.path.normpath(os.path.join(base, path))

    def _too_large(self, content: str) -> bool:
        return len(content.encode("utf-8")) / 1024 > self._settings.max_file_size_kb

    async def _snapshot(self, path: str) -> FileSnapshot | None:
        content = await self._fs.read_file(path)
        if content is not None and self._too_large(content):
            LOGGER.warning("File too large for checkpoint, skipping: %s", path)
            return None
        return FileSnapshot(content=content, timestamp=self._clock())

    def _index_of(self, checkpoint_id: str) -> int:
        for index, checkpoint in enumerate(self._checkpoints):
            if checkpoint.id == checkpoint_id:
                return index
        return -1

    async def _persist(self) -> None:
        path = self.storage_path
        if path is None:
            return
        payload = {
            "checkpoints": [checkpoint.to_dict() for checkpoint in self._checkpoints],
            "currentIdx": self._current_index,
        }
        try:
            await asyncio.to_thread(_write_json_atomic, path, payload)
        except OSError:
            LOGGER.warning("Failed to save checkpoints to %s", path, exc_info=True)

    def _notify(self, method: str, *args: Any) -> None:
        if self._listener is None:
            return
        callback = getattr(self._listener, method, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.debug("Checkpoint listener %s failed", method, exc_info=True)


def _write_json_atomic(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
