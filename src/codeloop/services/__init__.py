"""Service layer helpers (settings, session wiring)."""

from .factory import create_session
from .settings import AgentSettings, ContextSettings, SecretVault, Settings, SettingsStore, redact_secret

__all__ = [
    "AgentSettings",
    "ContextSettings",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "create_session",
    "redact_secret",
]
