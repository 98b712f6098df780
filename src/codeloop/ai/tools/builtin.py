"""Specifications and registration of the builtin tool set.

Schemas are plain JSON Schema objects; validation happens in the registry
before an executor ever sees the arguments.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..orchestration.plan import PlanStore
from ..orchestration.tools.registry import ToolRegistry
from ..orchestration.tools.types import ApprovalType, ToolCategory, ToolSpec
from .args import TOOL_ARG_TYPES
from .command import CommandRunner, RunCommandTool, SubprocessRunner
from .diagnostics import DiagnosticsProvider, LintErrorsTool, NullDiagnostics
from .file_tools import (
    CreateFileOrFolderTool,
    DeleteFileOrFolderTool,
    DirTreeTool,
    EditFileTool,
    ListDirectoryTool,
    ReadFileTool,
    ReadMultipleFilesTool,
    ReplaceFileContentTool,
    WriteFileTool,
)
from .filesystem import FileSystem
from .plan_tools import CreatePlanTool, UpdatePlanTool
from .search_tools import SearchFilesTool, SearchInFileTool
from .web import ReadUrlTool

__all__ = ["BUILTIN_TOOL_SPECS", "FILE_EDIT_TOOLS", "register_builtin_tools"]

LOGGER = logging.getLogger(__name__)

# Tools whose success leaves a file worth re-checking for diagnostics.
FILE_EDIT_TOOLS: frozenset[str] = frozenset({"edit_file", "write_file", "create_file_or_folder"})

_PLAN_ITEM_STATUSES = ["pending", "in_progress", "completed", "failed"]


def _object(properties: Mapping[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": dict(properties)}
    if required:
        schema["required"] = required
    return schema


def _path(description: str = "File path") -> dict[str, Any]:
    return {"type": "string", "minLength": 1, "description": description}


def _spec(
    name: str,
    description: str,
    parameters: dict[str, Any],
    *,
    category: str,
    parallel: bool = False,
    approval_type: str = ApprovalType.NONE,
) -> ToolSpec:
    return ToolSpec(
        name=name,
        description=description,
        parameters=parameters,
        category=category,
        approval_type=approval_type,
        parallel=parallel,
        args_type=TOOL_ARG_TYPES[name],
    )


BUILTIN_TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        # read
        _spec(
            "read_file",
            "Read file contents with optional line range. Lines are returned as 'N: text'.",
            _object(
                {
                    "path": _path(),
                    "start_line": {"type": "integer", "minimum": 1, "description": "Starting line (1-indexed)"},
                    "end_line": {"type": "integer", "minimum": 1, "description": "Ending line (inclusive)"},
                },
                ["path"],
            ),
            category=ToolCategory.READ,
            parallel=True,
        ),
        _spec(
            "list_directory",
            "List files and folders in a directory.",
            _object({"path": _path("Directory path")}, ["path"]),
            category=ToolCategory.READ,
            parallel=True,
        ),
        _spec(
            "get_dir_tree",
            "Get recursive directory tree structure.",
            _object(
                {
                    "path": _path("Root directory path"),
                    "max_depth": {"type": "integer", "minimum": 1, "description": "Maximum depth (default: 3)"},
                },
                ["path"],
            ),
            category=ToolCategory.READ,
            parallel=True,
        ),
        _spec(
            "read_multiple_files",
            "Read multiple files at once.",
            _object(
                {
                    "paths": {
                        "type": "array",
                        "items": {"type": "string"},
                        "minItems": 1,
                        "description": "File paths to read",
                    }
                },
                ["paths"],
            ),
            category=ToolCategory.READ,
            parallel=True,
        ),
        # search
        _spec(
            "search_files",
            "Search for a text pattern in files below a directory.",
            _object(
                {
                    "path": _path("Directory to search"),
                    "pattern": {"type": "string", "minLength": 1, "description": "Search pattern"},
                    "is_regex": {"type": "boolean", "description": "Treat pattern as a regular expression"},
                    "file_pattern": {"type": "string", "description": "File name filter, e.g. '*.py'"},
                },
                ["path", "pattern"],
            ),
            category=ToolCategory.SEARCH,
            parallel=True,
        ),
        _spec(
            "search_in_file",
            "Search for a pattern within a specific file.",
            _object(
                {
                    "path": _path("File path to search in"),
                    "pattern": {"type": "string", "minLength": 1, "description": "Search pattern"},
                    "is_regex": {"type": "boolean", "description": "Treat pattern as a regular expression"},
                },
                ["path", "pattern"],
            ),
            category=ToolCategory.SEARCH,
            parallel=True,
        ),
        # write
        _spec(
            "edit_file",
            "Edit a file using SEARCH/REPLACE blocks. "
            "Format: <<<<<<< SEARCH\\nold\\n=======\\nnew\\n>>>>>>> REPLACE. The file must be read first.",
            _object(
                {
                    "path": _path(),
                    "search_replace_blocks": {"type": "string", "minLength": 1, "description": "SEARCH/REPLACE blocks"},
                },
                ["path", "search_replace_blocks"],
            ),
            category=ToolCategory.WRITE,
        ),
        _spec(
            "write_file",
            "Write or overwrite the entire content of a file.",
            _object({"path": _path(), "content": {"type": "string", "description": "File content"}}, ["path", "content"]),
            category=ToolCategory.WRITE,
        ),
        _spec(
            "replace_file_content",
            "Replace a range of lines in a file. The file must be read first.",
            _object(
                {
                    "path": _path(),
                    "start_line": {"type": "integer", "minimum": 1, "description": "Start line (1-indexed)"},
                    "end_line": {"type": "integer", "minimum": 1, "description": "End line (inclusive)"},
                    "content": {"type": "string", "description": "New content"},
                },
                ["path", "start_line", "end_line", "content"],
            ),
            category=ToolCategory.WRITE,
        ),
        _spec(
            "create_file_or_folder",
            "Create a new file or folder. A path ending with / creates a folder.",
            _object(
                {
                    "path": _path("Path (end with / for a folder)"),
                    "content": {"type": "string", "description": "Initial content for files"},
                },
                ["path"],
            ),
            category=ToolCategory.WRITE,
        ),
        _spec(
            "delete_file_or_folder",
            "Delete a file or folder.",
            _object(
                {
                    "path": _path("Path to delete"),
                    "recursive": {"type": "boolean", "description": "Required to delete a folder that is not empty"},
                },
                ["path"],
            ),
            category=ToolCategory.WRITE,
            approval_type=ApprovalType.DANGEROUS,
        ),
        # terminal, diagnostics, network
        _spec(
            "run_command",
            "Execute a command in the workspace.",
            _object(
                {
                    "command": {"type": "string", "minLength": 1, "description": "Command line"},
                    "cwd": {"type": "string", "description": "Working directory"},
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "Timeout in seconds (default: 30)"},
                },
                ["command"],
            ),
            category=ToolCategory.TERMINAL,
            approval_type=ApprovalType.TERMINAL,
        ),
        _spec(
            "get_lint_errors",
            "Get lint and compile errors for a file.",
            _object(
                {
                    "path": _path(),
                    "refresh": {"type": "boolean", "description": "Re-run diagnostics instead of using cached ones"},
                },
                ["path"],
            ),
            category=ToolCategory.LSP,
            parallel=True,
        ),
        _spec(
            "read_url",
            "Fetch and read content from a URL.",
            _object(
                {
                    "url": {"type": "string", "minLength": 1, "description": "URL to fetch"},
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "Timeout in seconds (default: 30)"},
                },
                ["url"],
            ),
            category=ToolCategory.NETWORK,
            parallel=True,
        ),
        # plan
        _spec(
            "create_plan",
            "Create a new execution plan with steps.",
            _object(
                {
                    "items": {
                        "type": "array",
                        "minItems": 1,
                        "items": _object(
                            {"title": {"type": "string", "minLength": 1}, "description": {"type": "string"}},
                            ["title"],
                        ),
                    },
                    "title": {"type": "string"},
                },
                ["items"],
            ),
            category=ToolCategory.PLAN,
        ),
        _spec(
            "update_plan",
            "Update the current plan status, its items or the current step. "
            "Items are matched by id, id prefix, 1-based index or title.",
            _object(
                {
                    "status": {"type": "string", "enum": ["active", "completed", "failed"]},
                    "items": {
                        "type": "array",
                        "items": _object(
                            {
                                "id": {"type": ["string", "integer"]},
                                "status": {"type": "string", "enum": _PLAN_ITEM_STATUSES},
                                "title": {"type": "string"},
                                "description": {"type": "string"},
                            }
                        ),
                    },
                    "current_step_id": {"type": ["string", "integer", "null"]},
                    "title": {"type": "string"},
                }
            ),
            category=ToolCategory.PLAN,
        ),
    )
}

_REQUIRES_READ = frozenset({"edit_file", "replace_file_content"})


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    file_system: FileSystem,
    plan_store: PlanStore,
    command_runner: CommandRunner | None = None,
    diagnostics: DiagnosticsProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    storage_dir: str = ".codeloop",
    allow_override: bool = False,
) -> list[str]:
    """Register every builtin tool and return the registered names.

    ``read_url`` is only registered when an ``http_client`` is supplied; the
    caller owns that client and closes it.
    """
    runner = command_runner or SubprocessRunner()
    provider = diagnostics or NullDiagnostics()
    executors: dict[str, Any] = {
        "read_file": ReadFileTool(file_system).run,
        "list_directory": ListDirectoryTool(file_system).run,
        "get_dir_tree": DirTreeTool(file_system).run,
        "read_multiple_files": ReadMultipleFilesTool(file_system).run,
        "search_files": SearchFilesTool(file_system).run,
        "search_in_file": SearchInFileTool(file_system).run,
        "edit_file": EditFileTool(file_system).run,
        "write_file": WriteFileTool(file_system).run,
        "replace_file_content": ReplaceFileContentTool(file_system).run,
        "create_file_or_folder": CreateFileOrFolderTool(file_system).run,
        "delete_file_or_folder": DeleteFileOrFolderTool(file_system).run,
        "run_command": RunCommandTool(runner).run,
        "get_lint_errors": LintErrorsTool(provider).run,
        "create_plan": CreatePlanTool(plan_store, file_system, storage_dir).run,
        "update_plan": UpdatePlanTool(plan_store, file_system, storage_dir).run,
    }
    if http_client is not None:
        executors["read_url"] = ReadUrlTool(http_client).run

    registered: list[str] = []
    for name, executor in executors.items():
        spec = BUILTIN_TOOL_SPECS[name]
        metadata = {"builtin": True, "requires_read": name in _REQUIRES_READ}
        registry.register(spec, executor, allow_override=allow_override, metadata=metadata)
        registered.append(name)
    LOGGER.debug("Registered %d builtin tools", len(registered))
    return registered
