"""Typed argument records for the builtin tools.

Arguments arrive as JSON objects that have already passed schema
validation. Each builtin tool gets a frozen dataclass so executors work with
attributes instead of dictionary lookups.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Union

__all__ = [
    "ReadFileArgs",
    "ListDirectoryArgs",
    "GetDirTreeArgs",
    "SearchFilesArgs",
    "SearchInFileArgs",
    "ReadMultipleFilesArgs",
    "EditFileArgs",
    "WriteFileArgs",
    "ReplaceFileContentArgs",
    "CreateFileOrFolderArgs",
    "DeleteFileOrFolderArgs",
    "RunCommandArgs",
    "GetLintErrorsArgs",
    "ReadUrlArgs",
    "PlanItemInput",
    "PlanItemUpdate",
    "CreatePlanArgs",
    "UpdatePlanArgs",
    "ToolArgs",
    "TOOL_ARG_TYPES",
    "parse_args",
]


def _known(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names and value is not None}


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


# -----------------------------------------------------------------------------
# Read & search
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ReadFileArgs:
    path: str
    start_line: int | None = None
    end_line: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReadFileArgs:
        return cls(
            path=str(data["path"]),
            start_line=_optional_int(data.get("start_line")),
            end_line=_optional_int(data.get("end_line")),
        )


@dataclass(slots=True, frozen=True)
class ListDirectoryArgs:
    path: str = "."

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ListDirectoryArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class GetDirTreeArgs:
    path: str = "."
    max_depth: int = 3

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GetDirTreeArgs:
        depth = data.get("max_depth")
        return cls(path=str(data.get("path") or "."), max_depth=int(depth) if depth else 3)


@dataclass(slots=True, frozen=True)
class SearchFilesArgs:
    path: str
    pattern: str
    is_regex: bool = False
    file_pattern: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SearchFilesArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class SearchInFileArgs:
    path: str
    pattern: str
    is_regex: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SearchInFileArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class ReadMultipleFilesArgs:
    paths: tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReadMultipleFilesArgs:
        return cls(paths=tuple(str(path) for path in data.get("paths") or ()))


# -----------------------------------------------------------------------------
# Write
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class EditFileArgs:
    path: str
    search_replace_blocks: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EditFileArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class WriteFileArgs:
    path: str
    content: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WriteFileArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class ReplaceFileContentArgs:
    path: str
    start_line: int
    end_line: int
    content: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReplaceFileContentArgs:
        return cls(
            path=str(data["path"]),
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            content=str(data["content"]),
        )


@dataclass(slots=True, frozen=True)
class CreateFileOrFolderArgs:
    path: str
    content: str = ""

    @property
    def is_folder(self) -> bool:
        return self.path.endswith(("/", "\\"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreateFileOrFolderArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class DeleteFileOrFolderArgs:
    path: str
    recursive: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeleteFileOrFolderArgs:
        return cls(**_known(cls, data))


# -----------------------------------------------------------------------------
# Terminal, diagnostics & network
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunCommandArgs:
    command: str
    cwd: str | None = None
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunCommandArgs:
        timeout = data.get("timeout")
        return cls(
            command=str(data["command"]),
            cwd=data.get("cwd") or None,
            timeout=float(timeout) if timeout else 30.0,
        )


@dataclass(slots=True, frozen=True)
class GetLintErrorsArgs:
    path: str
    refresh: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GetLintErrorsArgs:
        return cls(**_known(cls, data))


@dataclass(slots=True, frozen=True)
class ReadUrlArgs:
    url: str
    timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ReadUrlArgs:
        timeout = data.get("timeout")
        return cls(url=str(data["url"]), timeout=float(timeout) if timeout else 30.0)


# -----------------------------------------------------------------------------
# Plans
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PlanItemInput:
    title: str
    description: str | None = None


@dataclass(slots=True, frozen=True)
class PlanItemUpdate:
    id: str | None = None
    status: str | None = None
    title: str | None = None
    description: str | None = None


@dataclass(slots=True, frozen=True)
class CreatePlanArgs:
    items: tuple[PlanItemInput, ...]
    title: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CreatePlanArgs:
        items = tuple(
            PlanItemInput(title=str(item.get("title", "")), description=item.get("description") or None)
            for item in data.get("items") or ()
        )
        return cls(items=items, title=data.get("title") or None)


@dataclass(slots=True, frozen=True)
class UpdatePlanArgs:
    status: str | None = None
    items: tuple[PlanItemUpdate, ...] = ()
    current_step_id: str | None = None
    title: str | None = None
    has_step: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UpdatePlanArgs:
        items = tuple(
            PlanItemUpdate(
                id=str(item["id"]) if item.get("id") is not None else None,
                status=item.get("status") or None,
                title=item.get("title") or None,
                description=item.get("description"),
            )
            for item in data.get("items") or ()
            if isinstance(item, Mapping)
        )
        # camelCase is accepted for models that mirror other tool conventions
        key = "current_step_id" if "current_step_id" in data else "currentStepId"
        step = data.get(key)
        return cls(
            status=data.get("status") or None,
            items=items,
            current_step_id=str(step) if step is not None else None,
            title=data.get("title") or None,
            has_step=key in data,
        )


ToolArgs = Union[
    ReadFileArgs,
    ListDirectoryArgs,
    GetDirTreeArgs,
    SearchFilesArgs,
    SearchInFileArgs,
    ReadMultipleFilesArgs,
    EditFileArgs,
    WriteFileArgs,
    ReplaceFileContentArgs,
    CreateFileOrFolderArgs,
    DeleteFileOrFolderArgs,
    RunCommandArgs,
    GetLintErrorsArgs,
    ReadUrlArgs,
    CreatePlanArgs,
    UpdatePlanArgs,
]

TOOL_ARG_TYPES: dict[str, type] = {
    "read_file": ReadFileArgs,
    "list_directory": ListDirectoryArgs,
    "get_dir_tree": GetDirTreeArgs,
    "search_files": SearchFilesArgs,
    "search_in_file": SearchInFileArgs,
    "read_multiple_files": ReadMultipleFilesArgs,
    "edit_file": EditFileArgs,
    "write_file": WriteFileArgs,
    "replace_file_content": ReplaceFileContentArgs,
    "create_file_or_folder": CreateFileOrFolderArgs,
    "delete_file_or_folder": DeleteFileOrFolderArgs,
    "run_command": RunCommandArgs,
    "get_lint_errors": GetLintErrorsArgs,
    "read_url": ReadUrlArgs,
    "create_plan": CreatePlanArgs,
    "update_plan": UpdatePlanArgs,
}


def parse_args(tool_name: str, data: Mapping[str, Any]) -> ToolArgs:
    """Build the typed arguments for ``tool_name``.

    Raises:
        ValueError: ``tool_name`` is not a builtin tool.
        KeyError: A required argument is missing.
    """
    args_type = TOOL_ARG_TYPES.get(tool_name)
    if args_type is None:
        raise ValueError(f"Unknown tool: {tool_name}")
    return args_type.from_dict(data)
