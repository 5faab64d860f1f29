"""Structured logging configuration for the document relevance engine."""

import logging
import sys
from typing import Any

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


class StructuredFormatter(logging.Formatter):
    """JSON-like structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured output."""
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        # Add job_id if present in extra
        if hasattr(record, "job_id"):
            log_data["job_id"] = record.job_id

        # Add context passed with log_with_context
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        # Plain extra={...} fields (relationship_id, pair, attempt, ...)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in log_data and key != "extra_data":
                log_data[key] = value

        # Format as key=value pairs for readability
        parts = [f"{k}={v}" for k, v in log_data.items()]
        line = " ".join(parts)

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        # Set level based on environment
        try:
            from app.core.config import get_settings

            settings = get_settings()
            if settings.RELEVANCE_ENV == "dev":
                logger.setLevel(logging.DEBUG)
            else:
                logger.setLevel(logging.INFO)
        except Exception:
            # Default to INFO if settings not available
            logger.setLevel(logging.INFO)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with additional context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (e.g., job_id, pair, attempt)
    """
    extra = {"extra_data": kwargs}
    if "job_id" in kwargs:
        extra["job_id"] = kwargs.pop("job_id")
        extra["extra_data"] = kwargs

    logger.log(level, msg, extra=extra)
