"""Logging configuration for the GroupPolicy derivative controller."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from grouppolicy.core.config import Settings, settings as default_settings

CONTEXT_FIELDS = ("policy_name", "namespace", "derivative", "task_key")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter for structured logging."""

    def __init__(self, *args, app_settings: Optional[Settings] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.app_settings = app_settings or default_settings

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["app_name"] = self.app_settings.app_name
        log_record["app_version"] = self.app_settings.app_version
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_record[name] = getattr(record, name)


def setup_logging(app_settings: Optional[Settings] = None) -> None:
    """Configure logging for the controller."""
    app_settings = app_settings or default_settings

    root_logger = logging.getLogger()
    root_logger.setLevel(app_settings.log_level.value)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(app_settings.log_level.value)

    if app_settings.log_json:
        formatter = CustomJsonFormatter(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            app_settings=app_settings,
        )
    else:
        formatter = logging.Formatter(app_settings.log_format)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set log levels for third-party libraries
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kopf.objects").setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging configured",
        extra={
            "log_level": app_settings.log_level.value,
            "log_json": app_settings.log_json,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class PolicyLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps policy context onto every record."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_policy_logger(name: str, policy_name: str, namespace: str, **context):
    """Get a logger scoped to one GroupPolicy."""
    return PolicyLoggerAdapter(
        get_logger(name), {"policy_name": policy_name, "namespace": namespace, **context}
    )
