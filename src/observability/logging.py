from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .context import snapshot

# Attributes every LogRecord has; anything else on a record came in as a structured field.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_DEFAULT_LEVEL = "INFO"
_LEVEL_ENV = "MCPCHAT_LOG_LEVEL"


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: level, logger, event, turn context, then the event's fields."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(snapshot())
        payload.update(
            (k, _jsonable(v)) for k, v in record.__dict__.items() if k not in _RESERVED and not k.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class KVLogger:
    """Structured logging adapter: `log.info("event_name", key=value)`."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, event: str, **fields: object) -> None:
        self._emit(logging.DEBUG, event, fields)

    def info(self, event: str, **fields: object) -> None:
        self._emit(logging.INFO, event, fields)

    def warning(self, event: str, **fields: object) -> None:
        self._emit(logging.WARNING, event, fields)

    def error(self, event: str, **fields: object) -> None:
        self._emit(logging.ERROR, event, fields)

    def exception(self, event: str, **fields: object) -> None:
        self._emit(logging.ERROR, event, fields, exc_info=True)

    def _emit(self, level: int, event: str, fields: dict[str, object], *, exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        # A field named like a LogRecord attribute would make logging raise.
        extra = {f"{k}_" if k in _RESERVED else k: v for k, v in fields.items()}
        self._logger.log(level, event, extra=extra, exc_info=exc_info)


_configured = False


def configure_logging(level: str | None = None, *, force: bool = False) -> None:
    """Install the JSON handler on the root logger.

    Logs go to stderr; stdout carries the CLI's event stream. The level defaults
    to $MCPCHAT_LOG_LEVEL, then INFO.
    """

    global _configured
    if _configured and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or os.getenv(_LEVEL_ENV) or _DEFAULT_LEVEL).upper())
    _configured = True


def get_logger(name: str = "mcpchat") -> KVLogger:
    configure_logging()
    return KVLogger(logging.getLogger(name))
