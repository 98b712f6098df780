"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

import pytest

from codeloop.ai.orchestration.agent import AgentConfig, AgentSession
from codeloop.ai.orchestration.checkpoints import CheckpointManager
from codeloop.ai.orchestration.events import AgentEvent, EventBus
from codeloop.ai.orchestration.plan import PlanStore
from codeloop.ai.orchestration.stream import StreamError, StreamEvent
from codeloop.ai.orchestration.tools.registry import ToolRegistry
from codeloop.ai.tools.builtin import register_builtin_tools
from codeloop.ai.tools.command import CommandResult
from codeloop.ai.tools.diagnostics import Diagnostic
from codeloop.ai.tools.filesystem import DirEntry, LocalFileSystem


class ScriptedModelClient:
    """Model client that replays one scripted event list per call."""

    def __init__(self, turns: Sequence[Sequence[StreamEvent]] = ()) -> None:
        self.turns: list[list[StreamEvent]] = [list(turn) for turn in turns]
        self.calls: list[dict[str, Any]] = []

    def add_turn(self, *events: StreamEvent) -> None:
        self.turns.append(list(events))

    async def stream_turn(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": list(tools),
                "system_prompt": system_prompt,
            }
        )
        if not self.turns:
            yield StreamError("No scripted turn left", code="api")
            return
        for event in self.turns.pop(0):
            yield event

    def tool_names(self, call_index: int) -> list[str]:
        return [tool["function"]["name"] for tool in self.calls[call_index]["tools"]]


class MemoryFileSystem:
    """In-memory :class:`~codeloop.ai.tools.filesystem.FileSystem`."""

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self.files: dict[str, str] = {os.path.normpath(path): text for path, text in (files or {}).items()}
        self.directories: set[str] = set()
        self.deleted: list[str] = []

    async def read_file(self, path: str) -> str | None:
        return self.files.get(os.path.normpath(path))

    async def write_file(self, path: str, content: str) -> bool:
        self.files[os.path.normpath(path)] = content
        return True

    async def delete_file(self, path: str) -> bool:
        key = os.path.normpath(path)
        if key not in self.files:
            return False
        del self.files[key]
        self.deleted.append(key)
        return True

    async def read_dir(self, path: str) -> list[DirEntry] | None:
        root = os.path.normpath(path)
        names = {
            os.path.relpath(key, root).split(os.sep)[0]
            for key in self.files
            if key.startswith(root + os.sep)
        }
        return [DirEntry(name, os.path.join(root, name) not in self.files) for name in sorted(names)]

    async def mkdir(self, path: str) -> bool:
        self.directories.add(os.path.normpath(path))
        return True

    async def exists(self, path: str) -> bool:
        key = os.path.normpath(path)
        return key in self.files or key in self.directories

    async def size(self, path: str) -> int | None:
        content = self.files.get(os.path.normpath(path))
        return None if content is None else len(content.encode("utf-8"))


class FakeCommandRunner:
    def __init__(self, result: CommandResult | None = None) -> None:
        self.result = result or CommandResult(output="ok", exit_code=0)
        self.calls: list[dict[str, Any]] = []

    async def run(self, argv: Sequence[str], *, cwd: str | None, timeout: float) -> CommandResult:
        self.calls.append({"argv": list(argv), "cwd": cwd, "timeout": timeout})
        return self.result


class FakeDiagnostics:
    def __init__(self, diagnostics: Sequence[Diagnostic] = ()) -> None:
        self.diagnostics = list(diagnostics)
        self.requested: list[str] = []

    async def get_diagnostics(self, path: str, *, refresh: bool = False) -> Sequence[Diagnostic]:
        self.requested.append(path)
        return self.diagnostics


class EventRecorder:
    """Collects everything published on an :class:`EventBus`."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[AgentEvent] = []
        bus.subscribe(self.events.append)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def model_client() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def command_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def diagnostics() -> FakeDiagnostics:
    return FakeDiagnostics()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


@pytest.fixture
def memory_fs() -> MemoryFileSystem:
    return MemoryFileSystem()


@pytest.fixture
def make_session(
    workspace: Path,
    model_client: ScriptedModelClient,
    command_runner: FakeCommandRunner,
    diagnostics: FakeDiagnostics,
    event_bus: EventBus,
) -> Callable[..., AgentSession]:
    """Factory for sessions on a real temporary workspace with the builtin tools."""

    def _make(config: AgentConfig | None = None) -> AgentSession:
        file_system = LocalFileSystem()
        plan_store = PlanStore()
        registry = ToolRegistry()
        register_builtin_tools(
            registry,
            file_system=file_system,
            plan_store=plan_store,
            command_runner=command_runner,
            diagnostics=diagnostics,
        )
        return AgentSession(
            model_client,
            registry,
            checkpoints=CheckpointManager(file_system),
            plan_store=plan_store,
            event_bus=event_bus,
            file_system=file_system,
            config=config or AgentConfig(retry_delay=0.0, enable_auto_fix=False),
            workspace_path=str(workspace),
        )

    return _make
