"""
TAPS logging setup.

Workflow services log through module loggers and attach context with
``extra=``: the request being worked on (``request_id``, ``request_code``),
the downstream effect (``effect``: audit / sla / notify / reminder /
sla_sweep), the department, the acting role, and for scheduled runs the
job name and duration.

Output format:
    - JSON lines in production (one object per record, context as keys)
    - readable colored lines in development and tests
    - ``TAPS_LOG_FORMAT=json|readable`` overrides the choice
    - ``LOG_LEVEL`` overrides the level (default DEBUG, INFO in production)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "request_id",
    "request_code",
    "effect",
    "department",
    "role",
    "job",
    "duration_ms",
)

# Shown inline by the readable formatter; duration gets its own suffix.
_INLINE_FIELDS = ("request_id", "effect", "department", "job")

# SQLAlchemy echoes every statement at INFO; Alembic chatters during `flask db`.
_LIBRARY_LOGGERS = ("sqlalchemy.engine", "alembic")


def record_context(record: logging.LogRecord, fields=CONTEXT_FIELDS) -> dict:
    """Workflow context attached to *record*, skipping unset fields."""
    return {
        key: getattr(record, key)
        for key in fields
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message [key=value ...] [Nms]`` with level colors."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"

        context = record_context(record, _INLINE_FIELDS)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _pick_formatter(production: bool) -> logging.Formatter:
    choice = os.getenv("TAPS_LOG_FORMAT", "").lower()
    if choice == "json":
        return JSONFormatter()
    if choice == "readable":
        return ReadableFormatter()
    return JSONFormatter() if production else ReadableFormatter()


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _pick_formatter(production)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info(
            "Logging configured: level=%s format=%s",
            level_name, type(formatter).__name__,
        )
