"""Logging setup and per-server structured fields."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from sshtokenlogin.paths import log_dir

LOG_FILE_NAME = "sshtokenlogin.log"
# One login run writes a few dozen lines; keep a handful of runs around
_LOG_MAX_BYTES = 1_000_000
_LOG_BACKUPS = 3
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_FIELDS: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("sshtokenlogin_log_fields", default={})


@dataclass(frozen=True)
class LogConfig:
    """Where log records go and how much of them.

    The file always gets records so a failed login can be looked at later.
    stderr is opt-in: the terminal also carries remote output and prompts.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _env_level(default: int) -> int:
    value = os.getenv("SSHTOKENLOGIN_LOG_LEVEL", "").strip()
    if not value:
        return default
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def build_log_config(*, default_level: int = logging.INFO, verbose: bool = False) -> LogConfig:
    """Resolve log settings from ``SSHTOKENLOGIN_LOG_*`` and ``--verbose``.

    ``verbose`` wins over the environment: DEBUG, mirrored to stderr.
    """
    directory = Path(os.getenv("SSHTOKENLOGIN_LOG_DIR", "") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    return LogConfig(
        log_file=directory / LOG_FILE_NAME,
        level=logging.DEBUG if verbose else _env_level(default_level),
        stderr=verbose or _env_flag("SSHTOKENLOGIN_LOG_STDERR"),
        # asyncssh reports every channel event at INFO
        logger_levels={"asyncssh": logging.WARNING},
    )


def configure_logging(config: LogConfig) -> None:
    """Install the file (and optional stderr) handler on the root logger.

    Existing root handlers are removed first, so calling this twice does not
    duplicate lines.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.setLevel(config.level)

    handlers: list[logging.Handler] = [
        RotatingFileHandler(config.log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8")
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(FieldFormatter(_FORMAT))
        handler.addFilter(FieldFilter())
        root.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Tag every record logged inside the block with ``fields``.

    The orchestrator wraps each server's login in ``log_context(server=name)``.
    """
    merged = {**_FIELDS.get(), **{key: value for key, value in fields.items() if value is not None}}
    token = _FIELDS.set(merged)
    try:
        yield
    finally:
        _FIELDS.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short stable event name with key=value fields."""
    logger.log(level, event, extra={"event_fields": fields})


def _render(value: Any) -> str:
    if isinstance(value, str):
        if not value or any(ch.isspace() or ch in '="' for ch in value):
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _render_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_render(value)}" for key, value in sorted(fields.items()) if value is not None)


class FieldFilter(logging.Filter):
    """Copy the active :func:`log_context` fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_FIELDS.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class FieldFormatter(logging.Formatter):
    """Append context fields, then event fields, as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        tail = " ".join(
            part
            for part in (
                _render_fields(getattr(record, "context_fields", {})),
                _render_fields(getattr(record, "event_fields", {})),
            )
            if part
        )
        return f"{line} {tail}" if tail else line
