"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for agreement transitions and
settlement calls.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "lendit",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for JSONFormatter, anything else for plain text
        log_file: Optional file path; stdout when None

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "lendit") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the user performing the action
        action: Action being performed
        resource: Resource being acted upon, e.g. "agreement:<id>"
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if extra:
        record.extra = extra

    logger.handle(record)
