"""Wiring of an :class:`AgentSession` from persisted settings."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from ..ai.client import AIClient
from ..ai.context.compaction import CompactionService
from ..ai.context.manager import ContextManager
from ..ai.orchestration.agent import AgentSession
from ..ai.orchestration.checkpoints import CheckpointManager
from ..ai.orchestration.event_log import ChatEventLogger
from ..ai.orchestration.events import EventBus
from ..ai.orchestration.plan import PlanStore
from ..ai.orchestration.stream import ModelClient
from ..ai.orchestration.tools.registry import ToolRegistry
from ..ai.tools.builtin import register_builtin_tools
from ..ai.tools.command import CommandRunner
from ..ai.tools.diagnostics import DiagnosticsProvider
from ..ai.tools.filesystem import FileSystem, LocalFileSystem
from ..utils.logging import attach_log_file, log_dir_for
from .settings import Settings

__all__ = ["create_session"]

LOGGER = logging.getLogger(__name__)


def create_session(
    settings: Settings,
    *,
    workspace_path: str | None = None,
    client: ModelClient | None = None,
    file_system: FileSystem | None = None,
    event_bus: EventBus | None = None,
    command_runner: CommandRunner | None = None,
    diagnostics: DiagnosticsProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    enable_compaction: bool = True,
) -> AgentSession:
    """Create an :class:`AgentSession` with the builtin tools registered.

    Setting ``log_dir`` or ``debug_logging`` also attaches the rotating log file;
    per-turn event logs land in its ``events`` folder.

    Args:
        settings: Loaded settings; see :class:`~.settings.SettingsStore`.
        workspace_path: Root for relative tool paths and checkpoint storage.
        client: Model client; an :class:`AIClient` is built from settings when omitted.
        file_system: File access used by tools and checkpoints.
        event_bus: Bus to publish session events on.
        command_runner: Runner behind ``run_command``.
        diagnostics: Provider behind ``get_lint_errors``.
        http_client: Enables ``read_url``; the caller owns and closes it.
        enable_compaction: Summarize compacted turns with the model.

    Returns:
        A session ready for :meth:`AgentSession.send_message`.

    Example:
        >>> settings = SettingsStore().load()
        >>> session = create_session(settings, workspace_path="/repo")
    """
    log_dir = Path(settings.log_dir) if settings.log_dir else log_dir_for(workspace_path)
    if settings.log_dir or settings.debug_logging:
        log_path = attach_log_file(log_dir, debug=settings.debug_logging)
        LOGGER.info("Logging to %s", log_path)

    fs = file_system if file_system is not None else LocalFileSystem()
    model = client if client is not None else AIClient(settings.to_client_settings())
    plan_store = PlanStore()
    registry = ToolRegistry()
    register_builtin_tools(
        registry,
        file_system=fs,
        plan_store=plan_store,
        command_runner=command_runner,
        diagnostics=diagnostics,
        http_client=http_client,
    )
    summarizer = (
        CompactionService(model, keep_recent_turns=settings.context.keep_recent_turns)
        if enable_compaction
        else None
    )
    session = AgentSession(
        model,
        registry,
        checkpoints=CheckpointManager(fs, settings.checkpoints),
        context_manager=ContextManager(settings.to_context_config(), summarizer=summarizer),
        plan_store=plan_store,
        event_bus=event_bus,
        file_system=fs,
        config=settings.to_agent_config(),
        workspace_path=workspace_path,
        event_logger=ChatEventLogger(enabled=settings.debug_event_logging, base_dir=log_dir / "events"),
    )
    LOGGER.debug(
        "Created session %s for %s with %d tool(s)",
        session.session_id,
        workspace_path or "<no workspace>",
        len(registry),
    )
    return session
