"""
Structured Logging Configuration Module

One JSON object per line for every ledger, loan and import action, carrying
who acted (``actor_id``), what they did (``action``) and on which record
(``resource``, e.g. ``account:<id>``).
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes log_action attaches to a record
ACTION_FIELDS = ("actor_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """Renders a record and its action fields as a single JSON line"""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in ACTION_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json",
                  log_file: Optional[str] = None,
                  logger_name: str = "union_ledger") -> logging.Logger:
    """
    Configure the application logger; safe to call more than once.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" for structured output, "text" for plain lines
        log_file: Append to this file instead of writing to stderr
        logger_name: Logger to configure; children inherit its handler

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = "union_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               actor_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Emit one structured action line.

    Args:
        logger: Logger to emit on
        level: "info", "warning", "error", ...
        message: Human-readable summary
        actor_id: Caller-supplied identity performing the action
        action: Operation name, e.g. "deposit" or "approve_loan"
        resource: Record acted upon ("account:<id>", "loan:<id>")
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(logger.name, levelno, __name__, 0, message, (), None)
    values = (actor_id, action, resource, extra)
    for name, value in zip(ACTION_FIELDS, values):
        if value:
            setattr(record, name, value)
    logger.handle(record)
