"""Logging setup for throttle events.

Throttle decisions are logged as short event names (``throttle.matched``,
``throttle.safelisted``) with the details in ``extra`` fields. This module
makes those fields visible in both output formats, drops credentials that
may appear in cache settings or headers, and tags every record with the
current request id.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from throttleguard.core.config import LogSettings, settings

REDACTED = "[REDACTED]"

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Keys whose values never reach a log line, at any nesting depth
SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "api_key",
        "password",
        "secret",
        "token",
        "storage_uri",
        "named_params",
        "params",
    }
)

# Level names accepted in throttle config, including Rails-style aliases
_LEVEL_ALIASES: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "unknown": logging.CRITICAL,
}

# Attributes every LogRecord carries; anything else came from `extra`
_STANDARD_ATTRS = frozenset(
    vars(LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def resolve_log_level(name: str | None) -> int | None:
    """Translate a configured level name into a logging level.

    Args:
        name: Level name such as "info", "warn" or "fatal"; None disables.

    Returns:
        The numeric logging level, or None when name is None.

    Raises:
        ValueError: If the name is not a known level.
    """

    if name is None:
        return None
    level = _LEVEL_ALIASES.get(str(name).strip().lower())
    if level is None:
        raise ValueError(f"unknown log level: {name!r}")
    return level


class Redactor:
    """Replaces values of sensitive keys, recursing into containers."""

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        self.sensitive_keys = frozenset(
            k.lower() for k in (sensitive_keys or SENSITIVE_KEYS_DEFAULT)
        )

    def is_sensitive(self, key: str) -> bool:
        return key.lower() in self.sensitive_keys

    def redact(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                k: REDACTED if self.is_sensitive(str(k)) else self.redact(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return type(value)(self.redact(v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        """Return the record's ``extra`` fields with sensitive values replaced."""
        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            fields[key] = REDACTED if self.is_sensitive(key) else self.redact(value)
        return fields


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Redact sensitive extra fields on the record itself.

    Runs before any formatter, so third-party formatters never see secrets.
    """

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__()
        self.redactor = Redactor(sensitive_keys)

    def filter(self, record: LogRecord) -> bool:
        for key, value in self.redactor.extras(record).items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, extras."""

    def __init__(
        self,
        *,
        sensitive_keys: Iterable[str] | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__()
        self.redactor = Redactor(sensitive_keys)
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        payload.update(self.redactor.extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


class PlainFormatter(logging.Formatter):
    """Human-readable lines with extras appended as ``key=value`` pairs."""

    def __init__(self, sensitive_keys: Iterable[str] | None = None) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s %(message)s")
        self.redactor = Redactor(sensitive_keys)

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        extras = self.redactor.extras(record)
        if not extras:
            return line
        pairs = " ".join(f"{k}={v}" for k, v in extras.items())
        return f"{line} {pairs}"


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/throttleguard.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(file_path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install a single root handler according to LogSettings.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    if cfg.format.lower() == "plain":
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # Avoid double logging from uvicorn if it gets re-configured
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
