"""Logging configuration and structured context helpers."""

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

from agentrelay.config import parse_bool, parse_int
from agentrelay.paths import log_dir

DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3

# Field names whose values are replaced before a record is formatted.
SECRET_FIELD_MARKERS = ("token", "secret", "password", "api_key", "apikey", "private_key", "authorization")
REDACTED = "***"

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("agentrelay_log_context", default={})
_LOG_CHUNKS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    """Configuration for log setup.

    The server and the chat console share one layout: a rotating file in the
    platform log directory, optionally mirrored to stderr or emitted as JSON.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging._nameToLevel.get(value.upper(), default)


def build_log_config(
    *,
    log_file_name: str,
    default_level: int = logging.INFO,
    stderr: bool | None = None,
) -> LogConfig:
    """Build log configuration from `AGENTRELAY_LOG_*` environment overrides."""

    directory = Path(os.getenv("AGENTRELAY_LOG_DIR") or str(log_dir()))
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=_parse_level(os.getenv("AGENTRELAY_LOG_LEVEL"), default_level),
        stderr=parse_bool(os.getenv("AGENTRELAY_LOG_STDERR"), bool(stderr)),
        json=parse_bool(os.getenv("AGENTRELAY_LOG_JSON"), False),
        log_chunks=parse_bool(os.getenv("AGENTRELAY_LOG_CHUNKS"), False),
        max_bytes=parse_int(os.getenv("AGENTRELAY_LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        # paramiko logs every packet at DEBUG; keep it quiet unless asked for.
        logger_levels={"paramiko": logging.WARNING},
        backup_count=parse_int(os.getenv("AGENTRELAY_LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Configure root logging with rotation and context support.

    Root handlers are reset so repeated setup (tests, uvicorn reloads) does not
    duplicate lines.
    """

    global _LOG_CHUNKS_ENABLED
    _LOG_CHUNKS_ENABLED = config.log_chunks

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(ContextFilter())
    root_logger.addHandler(file_handler)

    if config.stderr:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        root_logger.addHandler(stream_handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """Return True if every session update should be logged (noisy, opt-in)."""

    return _LOG_CHUNKS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach structured context fields (session id, backend, ...) to log records within a block."""

    current = _LOG_CONTEXT.get()
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a short, stable dotted event name with key=value fields."""

    logger.log(level, event, extra={"event_fields": fields})


def redact_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of `fields` with credential-looking keys masked."""
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        lowered = key.lower()
        if value is not None and any(marker in lowered for marker in SECRET_FIELD_MARKERS):
            cleaned[key] = REDACTED
        else:
            cleaned[key] = value
    return cleaned


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_format_value(value)}" for key, value in sorted(fields.items()) if value is not None)


def _structured(record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
    """Redacted `(context, event fields)` attached to a record by `ContextFilter`/`log_event`."""
    return (
        redact_fields(getattr(record, "context_fields", {})),
        redact_fields(getattr(record, "event_fields", {})),
    )


class ContextFilter(logging.Filter):
    """Inject context fields into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    """Human-readable lines with context and event fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        context, fields = _structured(record)
        extra = _format_fields({**context, **fields})
        base = super().format(record)
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    """One JSON object per record; credentials are masked like in text lines."""

    def format(self, record: logging.LogRecord) -> str:
        context, fields = _structured(record)
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)
