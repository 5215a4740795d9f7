"""
Logging configuration.

Handlers installed by :func:`setup_logging`:

- **console**: colour-coded, one line per record, for development;
- **application file**: rotating, one JSON object per line;
- **error file**: the same JSON, ERROR and above only, for alerting;
- **audit file**: only the ``audit`` logger, i.e. the business events
  written by :class:`~tranche_service.core.audit.LoggingAuditSink`.

:class:`RequestIDFilter` copies the current request's ID (stored in
:data:`request_id_var` by the request-id middleware) onto every record, so a
purchase, its retries and its audit events can be correlated.

Modules use ``logging.getLogger(__name__)``.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from tranche_service.core.config import settings

LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
LOG_FILE = "tranche-service.log"
ERROR_LOG_FILE = "tranche-service-error.log"
AUDIT_LOG_FILE = "tranche-service-audit.log"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# ``extra=`` keys promoted to top-level JSON fields.
_EXTRA_FIELDS = (
    "status_code",
    "method",
    "path",
    "elapsed_ms",
    "client_ip",
    "event_type",
    "fund_id",
    "tier_id",
    "tranche_id",
    "investment_id",
    "audit",
)


class RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record::

        {"timestamp": "2026-03-01T12:00:00.123+00:00", "level": "INFO",
         "logger": "audit", "message": "PURCHASE_EXECUTED {...}",
         "location": "audit.record:45", "request_id": "5b0c...",
         "event_type": "PURCHASE_EXECUTED", "audit": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if getattr(record, "request_id", None):
            entry["request_id"] = record.request_id
        entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``time | LEVEL | logger [request] | message`` with a coloured level."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        colour = self.COLOURS.get(record.levelname, self.RESET)
        request_id = getattr(record, "request_id", None)
        origin = f"{record.name} [{request_id[:8]}]" if request_id else record.name

        line = f"{when} | {colour}{record.levelname:<8}{self.RESET} | {origin} | {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _json_file_handler(filename: str, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, filename),
        maxBytes=settings.LOG_FILE_MAX_BYTES,
        backupCount=settings.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestIDFilter())
    return handler


def _resolve_level() -> int:
    if settings.DEBUG:
        return logging.DEBUG
    return getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)


def setup_logging() -> None:
    """Install the handlers above.  A second call is a no-op."""
    root = logging.getLogger()
    if root.handlers:
        return

    level = _resolve_level()
    root.setLevel(level)
    os.makedirs(LOG_DIR, exist_ok=True)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ConsoleFormatter())
    console.addFilter(RequestIDFilter())
    root.addHandler(console)
    root.addHandler(_json_file_handler(LOG_FILE, level))
    root.addHandler(_json_file_handler(ERROR_LOG_FILE, logging.ERROR))

    # Audit events also propagate to the handlers above.
    logging.getLogger("audit").addHandler(_json_file_handler(AUDIT_LOG_FILE, logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.DEBUG else logging.WARNING
    )

    root.info(
        "Logging initialised at %s; files in %s (%d MB x %d backups)",
        logging.getLevelName(level),
        LOG_DIR,
        settings.LOG_FILE_MAX_BYTES // (1024 * 1024),
        settings.LOG_FILE_BACKUP_COUNT,
    )
