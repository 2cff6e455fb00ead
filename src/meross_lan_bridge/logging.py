"""Structured logging for the bridge.

Every subsystem logs through a ``meross.*`` logger and passes context in
``extra=``; the JSON formatter lifts those fields into the emitted object.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import Config

REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"authorization", "x-api-key", "cookie", "key", "secret", "sign"})

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Bridge loggers and the Config field that overrides their level, if any.
_LOGGERS: Dict[str, Optional[str]] = {
    "meross": None,
    "meross.platform": None,
    "meross.translator": None,
    "meross.protocol": "protocol_log_level",
    "meross.api": "api_log_level",
    "meross.api.middleware": "api_log_level",
}


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_") and key not in payload
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def redact_mapping(values: Mapping[str, Any], extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Copy ``values`` replacing credentials and signing material with a mask."""

    hidden = _SENSITIVE_KEYS | {key.lower() for key in extra_keys}
    return {key: REDACTED if key.lower() in hidden else value for key, value in values.items()}


def _formatter(log_format: str) -> Dict[str, Any]:
    if log_format == "json":
        return {"()": f"{__name__}.JsonFormatter"}
    return {
        "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        "datefmt": "%Y-%m-%dT%H:%M:%S%z",
    }


def configure_logging(config: Config) -> None:
    """Install handlers and per-subsystem levels for ``config``."""

    default_level = config.log_level.upper()
    loggers = {}
    for name, override in _LOGGERS.items():
        level = (getattr(config, override) if override else None) or default_level
        loggers[name] = {"level": level.upper(), "handlers": ["console"], "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": _formatter(config.log_format)},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "DEBUG",
                }
            },
            "loggers": loggers,
            "root": {"level": default_level, "handlers": ["console"]},
        }
    )


def set_level(level: str) -> None:
    """Change every bridge logger to ``level`` at runtime."""

    for name in _LOGGERS:
        logging.getLogger(name).setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
