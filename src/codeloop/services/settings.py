"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.client import ClientSettings
from ..ai.context.config import ContextConfig
from ..ai.orchestration.agent import AgentConfig, AutoApprove, LoopDetectionConfig
from ..ai.orchestration.checkpoints import CheckpointSettings

__all__ = [
    "Settings",
    "AgentSettings",
    "ContextSettings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".codeloop"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CODELOOP_API_KEY": "api_key",
    "CODELOOP_BASE_URL": "base_url",
    "CODELOOP_MODEL": "model",
    "CODELOOP_ORGANIZATION": "organization",
    "CODELOOP_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CODELOOP_DEBUG_LOGGING": "debug_logging",
    "CODELOOP_DEBUG_EVENT_LOGGING": "debug_event_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CODELOOP_REQUEST_TIMEOUT": "request_timeout",
    "CODELOOP_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CODELOOP_MAX_TOOL_LOOPS": "agent.max_tool_loops",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
_TOKEN_PREFIX = "fernet:"


@dataclass(slots=True)
class AgentSettings:
    """Agent loop limits surfaced in the settings file."""

    max_tool_loops: int = 30
    max_history_messages: int = 60
    max_tool_result_chars: int = 10_000
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff_multiplier: float = 1.5
    tool_timeout: float = 60.0
    context_compress_threshold: int = 40_000
    keep_recent_turns: int = 3
    loop_max_history: int = 5
    loop_max_exact_repeats: int = 2
    enable_auto_fix: bool = True


@dataclass(slots=True)
class ContextSettings:
    """Token budget used when optimizing the history before each turn."""

    max_tokens: int = 100_000
    keep_recent_turns: int = 5
    max_tool_result_chars: int = 8_000


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: dict[str, str] = field(default_factory=dict)
    agent: AgentSettings = field(default_factory=AgentSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    auto_approve: dict[str, bool] = field(
        default_factory=lambda: {"edits": False, "terminal": False, "dangerous": False}
    )
    debug_logging: bool = False
    debug_event_logging: bool = False
    log_dir: str | None = None

    def to_agent_config(self) -> AgentConfig:
        agent = self.agent
        return AgentConfig(
            max_tool_loops=agent.max_tool_loops,
            max_history_messages=agent.max_history_messages,
            max_tool_result_chars=agent.max_tool_result_chars,
            max_retries=agent.max_retries,
            retry_delay=agent.retry_delay,
            retry_backoff_multiplier=agent.retry_backoff_multiplier,
            tool_timeout=agent.tool_timeout,
            context_compress_threshold=agent.context_compress_threshold,
            keep_recent_turns=agent.keep_recent_turns,
            loop_detection=LoopDetectionConfig(
                max_history=agent.loop_max_history,
                max_exact_repeats=agent.loop_max_exact_repeats,
            ),
            enable_auto_fix=agent.enable_auto_fix,
            auto_approve=AutoApprove(
                edits=bool(self.auto_approve.get("edits")),
                terminal=bool(self.auto_approve.get("terminal")),
                dangerous=bool(self.auto_approve.get("dangerous")),
            ),
        )

    def to_context_config(self) -> ContextConfig:
        return ContextConfig(
            max_tokens=self.context.max_tokens,
            keep_recent_turns=self.context.keep_recent_turns,
            max_tool_result_chars=self.context.max_tool_result_chars,
        )

    def to_client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            temperature=self.temperature,
            debug_logging=self.debug_logging,
        )


# Nested sections and the dataclass each one is rebuilt with.
_SECTIONS: Mapping[str, type] = {
    "agent": AgentSettings,
    "checkpoints": CheckpointSettings,
    "context": ContextSettings,
}


class SecretVault:
    """Encrypts and decrypts sensitive strings with a Fernet key stored on disk."""

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return _TOKEN_PREFIX + token.decode("ascii")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        payload = token[len(_TOKEN_PREFIX):] if token.startswith(_TOKEN_PREFIX) else token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying caller and environment overrides."""
        payload = self._read_payload()
        settings = Settings()
        needs_migration = False
        if payload:
            plaintext_key, needs_migration = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            data = _filter_fields(payload)
            for name, section_type in _SECTIONS.items():
                data[name] = _load_section(section_type, data.get(name))
            approvals = data.get("auto_approve")
            if isinstance(approvals, Mapping):
                data["auto_approve"] = {**Settings().auto_approve, **{k: bool(v) for k, v in approvals.items()}}
            else:
                data.pop("auto_approve", None)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)

        if needs_migration:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="caller")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with an atomic file write."""
        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            try:
                data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Failed to encrypt API key; it will not be saved: %s", exc)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        nested: Dict[str, Dict[str, Any]] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            section, _, name = key.partition(".")
            if name and section in _SECTIONS:
                nested.setdefault(section, {})[name] = value
            elif key in allowed:
                filtered[key] = value
        for section, values in nested.items():
            current = getattr(settings, section)
            known = {item.name for item in fields(current)}
            unknown = sorted(set(values) - known)
            if unknown:
                LOGGER.debug("Ignoring unknown %s settings: %s", section, unknown)
            filtered[section] = replace(current, **{k: v for k, v in values.items() if k in known})
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def redact_secret(value: str | None) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _load_section(section_type: type, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return section_type()
    known = {item.name for item in fields(section_type)}
    try:
        return section_type(**{key: value for key, value in payload.items() if key in known})
    except TypeError:
        LOGGER.warning("Invalid %s settings; using defaults", section_type.__name__)
        return section_type()
