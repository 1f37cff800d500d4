"""Structured logging configuration for the hotel identity resolution engine."""

import logging
import logging.handlers
import json
from datetime import datetime, timezone
from config.settings import LOG_LEVEL, LOG_FORMAT, MATCH_ERRORS_FILE, LOGS_DIR

_configured = False


class JSONFormatter(logging.Formatter):
    """Custom formatter to output logs as JSON."""

    def format(self, record):
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(force: bool = False):
    """Configure structured logging for the application."""
    global _configured
    root_logger = logging.getLogger()
    if _configured and not force:
        return root_logger

    # Ensure logs directory exists
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    root_logger.setLevel(LOG_LEVEL)

    # Remove handlers installed by a previous call
    for handler in root_logger.handlers[:]:
        if getattr(handler, "_hotel_identity", False):
            root_logger.removeHandler(handler)

    # Console handler with standard format
    console_handler = logging.StreamHandler()
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler._hotel_identity = True
    root_logger.addHandler(console_handler)

    # JSON file handler for errors
    error_handler = logging.handlers.RotatingFileHandler(
        MATCH_ERRORS_FILE, maxBytes=10 * 1024 * 1024, backupCount=3
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(JSONFormatter())
    error_handler._hotel_identity = True
    root_logger.addHandler(error_handler)

    _configured = True
    return root_logger


def get_logger(name):
    """Get a configured logger instance."""
    return logging.getLogger(name)


# Initialize logging on module import
setup_logging()
