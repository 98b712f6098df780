"""Log file wiring for codeloop sessions.

Records of the ``codeloop`` logger tree go to a rotating ``codeloop.log``
inside the chosen directory. The root logger is left alone so embedding
applications keep their own handlers.
"""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

__all__ = ["LOG_FILE_NAME", "attach_log_file", "detach_log_files", "log_dir_for"]

LOG_FILE_NAME = "codeloop.log"
_PACKAGE_LOGGER = "codeloop"
_NOISY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_HANDLERS: dict[Path, logging.Handler] = {}


def log_dir_for(workspace_path: str | None, storage_dir: str = ".codeloop") -> Path:
    """Default log directory: beside the workspace's checkpoints, else in the home folder."""
    base = Path(workspace_path) if workspace_path else Path.home()
    return base / storage_dir / "logs"


def attach_log_file(
    log_dir: Path | str,
    *,
    debug: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Send ``codeloop`` records to a rotating file in ``log_dir``.

    Attaching the same directory twice reuses its handler and only updates
    the level. With ``debug`` the package logs at DEBUG and the HTTP client
    loggers are left as configured; otherwise they are raised to WARNING.

    Returns:
        Path of the log file.
    """
    target = Path(log_dir).expanduser() / LOG_FILE_NAME
    level = logging.DEBUG if debug else logging.INFO
    handler = _HANDLERS.get(target)
    if handler is None:
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            target, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logging.getLogger(_PACKAGE_LOGGER).addHandler(handler)
        _HANDLERS[target] = handler
    handler.setLevel(level)

    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    if package_logger.level == logging.NOTSET or package_logger.level > level:
        package_logger.setLevel(level)
    if not debug:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    return target


def detach_log_files() -> None:
    """Remove and close every handler added by :func:`attach_log_file`."""
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in _HANDLERS.values():
        package_logger.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()
