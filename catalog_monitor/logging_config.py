"""Logging setup: readable console output plus JSON log files.

Scan and alert code logs through ``get_logger(__name__, creator_id=...,
provider_id=...)``; those context fields land as top-level keys in the JSON
records so a single creator's scans can be filtered out of ``app.log``.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, MutableMapping

from pythonjsonlogger import jsonlogger

from catalog_monitor.config import Settings

CONTEXT_FIELDS = ("creator_id", "provider_id", "alert_id", "detected_release_id")

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class CatalogJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps level, logger and source location on each record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"


class ContextConsoleFormatter(logging.Formatter):
    """Console formatter that appends creator/provider context as ``[key=value]``."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = [
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        ]
        if context:
            message = f"{message} [{' '.join(context)}]"
        return message


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(settings: Settings, base_dir: str | Path | None = None) -> logging.Logger:
    """Configure the root logger for the service.

    Args:
        settings: Settings providing log level and log directory
        base_dir: Directory to place the logs/ folder in. Falls back to
                  settings.log_dir, then the current working directory.

    Returns:
        The configured root logger
    """
    base = base_dir or settings.log_dir or None
    logs_dir = (Path(base) if base else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ContextConsoleFormatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    json_formatter = CatalogJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_file_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_file_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    # apscheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    if not settings.debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Merges the adapter's context into each record's ``extra``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ContextLoggerAdapter:
    """
    Get a logger bound to context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. creator_id='c1', provider_id='spotify'
    """
    return ContextLoggerAdapter(logging.getLogger(name), context)
