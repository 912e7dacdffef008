"""
Logging configuration for courier.

Dispatch code passes the row it is working on through ``extra=`` (outbox id,
chat, provider message id). Both formatters carry those fields: the JSON one as
top-level keys for log shippers, the text one as a ``key=value`` suffix so a
single outbox row can be grepped out of ``courier.log``.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("outbox_id", "chat_id", "message_id", "count")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_NOISY_LOGGERS = ("httpx", "httpcore", "telegram", "asyncpg", "aiosqlite")

_LOG_FILE_NAME = "courier.log"
_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


def _context(record: logging.LogRecord) -> dict:
    """Outbox context attached to a record, in a stable key order."""
    context = {}
    for key in _CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


class JsonFormatter(logging.Formatter):
    """One JSON object per record, outbox context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": "courier",
            "logger": record.name,
            "message": record.getMessage(),
        }
        log.update(_context(record))
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log)


class ContextTextFormatter(logging.Formatter):
    """Human-readable lines ending in ``[outbox_id=42 chat_id=...]`` when known."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        suffix = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{suffix}]{sep}{tail}"


def setup_logging(log_level: str, logs_dir: str, json_logs: bool) -> None:
    """Configure the root logger: console (JSON or text) plus a rotating file."""
    os.makedirs(logs_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    if json_logs:
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(ContextTextFormatter(fmt=_TEXT_FORMAT, datefmt="%H:%M:%S"))

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(logs_dir, _LOG_FILE_NAME),
        maxBytes=_LOG_FILE_MAX_BYTES,
        backupCount=_LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(ContextTextFormatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    logging.basicConfig(level=level, handlers=[console, file_handler], force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
