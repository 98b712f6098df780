"""codeloop: the control core of a tool-calling coding assistant."""

from .ai.client import AIClient, ClientSettings
from .ai.context.manager import ContextManager
from .ai.messages import Conversation, Message, ToolCall
from .ai.orchestration.agent import AgentConfig, AgentSession, TurnResult
from .ai.orchestration.checkpoints import CheckpointManager, CheckpointSettings
from .ai.orchestration.events import EventBus
from .ai.orchestration.tools.registry import ToolRegistry
from .ai.tools.builtin import register_builtin_tools
from .services.factory import create_session
from .services.settings import Settings, SettingsStore
from .utils.logging import attach_log_file

__all__ = [
    "AIClient",
    "AgentConfig",
    "AgentSession",
    "CheckpointManager",
    "CheckpointSettings",
    "ClientSettings",
    "ContextManager",
    "Conversation",
    "EventBus",
    "Message",
    "Settings",
    "SettingsStore",
    "ToolCall",
    "ToolRegistry",
    "TurnResult",
    "attach_log_file",
    "create_session",
    "register_builtin_tools",
]

__version__ = "0.1.0"
