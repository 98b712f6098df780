"""Tests for :func:`codeloop.services.factory.create_session`."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx
import pytest

from codeloop.ai.orchestration.stream import FullToolCall, StreamDone, TextDelta
from codeloop.ai.tools.filesystem import LocalFileSystem
from codeloop.services.factory import create_session
from codeloop.services.settings import AgentSettings, Settings
from codeloop.utils.logging import LOG_FILE_NAME, detach_log_files


def _settings() -> Settings:
    return Settings(
        api_key="test",
        agent=AgentSettings(max_tool_loops=7, retry_delay=0.0, enable_auto_fix=False),
        auto_approve={"edits": True, "terminal": False, "dangerous": False},
    )


def test_settings_flow_into_session(workspace, model_client, event_bus) -> None:
    session = create_session(
        _settings(),
        workspace_path=str(workspace),
        client=model_client,
        event_bus=event_bus,
    )

    assert session.config.max_tool_loops == 7
    assert session.auto_approve.edits is True
    assert session.auto_approve.terminal is False
    assert session.workspace_path == str(workspace)
    assert session.event_bus is event_bus


@pytest.mark.asyncio
async def test_session_runs_builtin_tools(workspace: Path, model_client, command_runner) -> None:
    (workspace / "notes.txt").write_text("hello from disk\n", encoding="utf-8")
    model_client.add_turn(FullToolCall("call-1", "read_file", {"path": "notes.txt"}), StreamDone())
    model_client.add_turn(TextDelta("All read."), StreamDone())
    session = create_session(
        _settings(),
        workspace_path=str(workspace),
        client=model_client,
        file_system=LocalFileSystem(),
        command_runner=command_runner,
    )

    result = await session.send_message("Read notes.txt")

    assert result.reason == "completed"
    assert result.text == "All read."
    names = model_client.tool_names(0)
    assert "read_file" in names
    assert "run_command" in names
    assert "create_plan" not in names
    assert "read_url" not in names
    tool_messages = [message for message in model_client.calls[1]["messages"] if message["role"] == "tool"]
    assert len(tool_messages) == 1
    assert "hello from disk" in tool_messages[0]["content"]


@pytest.mark.asyncio
async def test_http_client_enables_read_url(workspace: Path, model_client) -> None:
    model_client.add_turn(TextDelta("Hi"), StreamDone())
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))
    async with httpx.AsyncClient(transport=transport) as http_client:
        session = create_session(
            _settings(),
            workspace_path=str(workspace),
            client=model_client,
            http_client=http_client,
        )
        await session.send_message("Hi")

    assert "read_url" in model_client.tool_names(0)


@pytest.mark.asyncio
async def test_debug_logging_writes_session_log(workspace: Path, model_client) -> None:
    settings = _settings()
    settings.debug_logging = True
    settings.debug_event_logging = True
    model_client.add_turn(TextDelta("Hi"), StreamDone())
    package_logger = logging.getLogger("codeloop")
    level = package_logger.level
    try:
        session = create_session(settings, workspace_path=str(workspace), client=model_client)
        await session.send_message("Hello")
        for handler in package_logger.handlers:
            handler.flush()
    finally:
        detach_log_files()
        package_logger.setLevel(level)

    log_dir = workspace / ".codeloop" / "logs"
    text = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8")
    assert f"Created session {session.session_id}" in text
    assert "Agent loop iteration 1" in text
    assert list((log_dir / "events").glob("turn-*.jsonl"))


def test_logging_is_off_by_default(workspace: Path, model_client) -> None:
    create_session(_settings(), workspace_path=str(workspace), client=model_client)

    assert not (workspace / ".codeloop" / "logs").exists()
