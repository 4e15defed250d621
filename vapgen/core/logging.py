"""Logging configuration for the VAP generation controller."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from vapgen.core.config import Settings, get_settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter for structured logging."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        settings = get_settings()
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["app_name"] = settings.app_name
        log_record["app_version"] = settings.app_version
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        # Reconcile context
        if hasattr(record, "policy"):
            log_record["policy"] = record.policy
        if hasattr(record, "kind"):
            log_record["kind"] = record.kind


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure logging for the controller."""
    settings = settings or get_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.value)

    # Remove existing handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(settings.log_level.value)

    if settings.log_json:
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    else:
        formatter = logging.Formatter(settings.log_format)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set log levels for third-party libraries
    logging.getLogger("kopf").setLevel(logging.INFO)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging configured",
        extra={"log_level": settings.log_level.value, "log_json": settings.log_json},
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
