"""
Structured Logging Configuration Module

JSON log lines for loan servicing. Every line written through log_action
carries who acted (user and branch), what they did to which loan or
payment, and the request correlation id.
"""

import logging
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


# Request context copied from the record into each JSON line
CONTEXT_FIELDS = ("correlation_id", "user_id", "branch", "action", "resource")

LOG_FORMATS = ("json", "text")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _json_default(value: Any) -> str:
    # Amounts keep their exact decimal digits
    if isinstance(value, Decimal):
        return format(value, 'f')
    return str(value)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's creation time"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        details = getattr(record, 'details', None)
        if details:
            entry["extra"] = details
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_json_default)


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(level: str = "INFO", log_format: str = "json",
                  logger_name: str = "lending", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured lines, "text" for plain lines
        logger_name: Name of the application logger
        log_file: Optional file path; logs go to stderr when omitted

    Returns:
        Configured logger instance

    Raises:
        ValueError: If the level or format is unknown
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {log_format}")
    levelno = _level(level)

    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(levelno)
    logger.propagate = False
    return logger


def get_logger(name: str = "lending") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[Dict[str, Any]] = None, branch: Optional[str] = None) -> None:
    """
    Log a loan servicing action with its request context.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, ...)
        message: Human readable message
        user_id: Officer or system user who acted
        action: Action name, e.g. "payment_recorded"
        resource: Acted-on record, e.g. "loan:<id>"
        correlation_id: Request correlation id
        extra: Structured details such as the allocation of a payment
        branch: Branch the action was taken at
    """
    context = {
        "user_id": user_id,
        "branch": branch,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "details": extra,
    }
    logger.log(_level(level), message, extra={k: v for k, v in context.items() if v is not None})
