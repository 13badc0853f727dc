"""
Structured Logging Configuration Module

JSON log lines for every lending operation. Money movements are logged
through ``log_action`` so each line carries who acted, what they did and
which loan, repayment or wallet it touched.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

# Record attributes copied into the JSON line when present
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "peerfund",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name, case-insensitive
        logger_name: Logger to configure; ``peerfund`` covers every module
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional file path; stdout when omitted

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())

    # Lines go to this handler only, not the root logger's
    logger.propagate = False
    return logger


def get_logger(name: str = "peerfund") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a lending action with structured fields.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, ...)
        message: Human readable message
        user_id: Acting user
        action: Operation name, e.g. ``fund_from_wallet``
        resource: Id of the loan, repayment or wallet acted on
        correlation_id: Request or batch id for tracing
        extra: Additional structured data
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()), message,
        extra={key: value for key, value in fields.items() if value}
    )
