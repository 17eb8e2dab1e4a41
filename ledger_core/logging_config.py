"""
Logging configuration.

Two output styles, chosen by LOG_FORMAT:
- console: human-readable lines for development
- json: one JSON object per line for log aggregation

Modules never configure logging themselves; they only call
logging.getLogger(__name__). The embedding application calls
configure_logging() once at startup.
"""

import json
import logging
import logging.config
from datetime import datetime

from ledger_core.config import get_settings

_STANDARD_ATTRS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "exc_info", "exc_text", "stack_info",
    "message", "taskName",
}


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON line, keeping `extra` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extras = {
            key: value for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extras:
            log_entry["extra"] = extras

        return json.dumps(log_entry, default=str)


def get_logging_config(level: str | None = None, fmt: str | None = None) -> dict:
    """Build a dictConfig for the ledger_core loggers."""
    settings = get_settings()
    log_level = (level or settings.LOG_LEVEL).upper()
    log_format = fmt or settings.LOG_FORMAT

    if log_format == "json":
        formatters = {"default": {"()": "ledger_core.logging_config.JsonFormatter"}}
    else:
        formatters = {
            "default": {
                "format": "[{asctime}] {levelname} {name} {message}",
                "style": "{",
            },
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "ledger_core": {
                "handlers": ["console"],
                "level": log_level,
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "handlers": ["console"],
                "level": "INFO" if settings.DEBUG else "WARNING",
                "propagate": False,
            },
        },
    }


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    logging.config.dictConfig(get_logging_config(level, fmt))
