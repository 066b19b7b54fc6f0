"""Logging setup: JSON lines in production, plain text for local development."""

import logging
import sys
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

ROOT_LOGGER = "fileflow"


class ServiceJsonFormatter(JsonFormatter):
    """Adds timestamp, level and logger name to every JSON record."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def setup_logging(level: Optional[str] = None, format_type: str = "json") -> logging.Logger:
    """Configure the ``fileflow`` logger tree.

    Module loggers are created with ``logging.getLogger(__name__)`` and
    inherit the handler installed here.
    """
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if format_type == "json":
        formatter = ServiceJsonFormatter(
            fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False

    # supabase/httpx log every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
