"""Logging configuration for qb-port-sync.

Console output goes through a rich handler on stderr, keeping stdout free for
the ``--json`` report line. An optional rotating log file can carry plain or
structured JSON records.
"""

from __future__ import annotations

import json
import logging
import logging.config
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:  # pragma: no cover
    from qbportsync.models import LoggingConfig

PACKAGE_LOGGER = "qbportsync"

# Attributes every LogRecord has; anything else was passed via ``extra``.
_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
        )
        return json.dumps(log_entry, default=str)


def create_rich_handler(level: int = logging.INFO, console: Console | None = None) -> RichHandler:
    """Create the console handler.

    Args:
        level: Minimum level the handler emits
        console: Rich console to write to (stderr by default)

    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
        log_time_format="[%X]",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    return handler


def setup_logging(config: LoggingConfig, level: int | None = None) -> None:
    """Set up logging.

    Args:
        config: Logging settings
        level: Level overriding ``config.level`` (from ``-v`` flags)

    """
    effective = level if level is not None else logging.getLevelName(config.level.value)

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "format": "%(asctime)s %(levelname)s %(name)s.%(funcName)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {},
        "loggers": {
            PACKAGE_LOGGER: {
                "level": effective,
                "handlers": [],
                "propagate": False,
            },
        },
        "root": {
            "level": logging.WARNING,
            "handlers": [],
        },
    }

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": effective,
            "formatter": "structured" if config.structured else "simple",
            "filename": str(log_path),
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        logging_config["loggers"][PACKAGE_LOGGER]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    console_handler = create_rich_handler(level=effective)
    logging.getLogger(PACKAGE_LOGGER).addHandler(console_handler)
    logging.getLogger().addHandler(console_handler)
