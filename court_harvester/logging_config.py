"""
Structured logging configuration for the harvester.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

# Context fields passed through `extra=` that both formatters render
CONTEXT_FIELDS = ("phase", "prefix", "query", "key", "credential", "http_code")

# Where the line came from; readable output puts these ahead of the message
TAG_FIELDS = ("phase", "credential")


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for name in CONTEXT_FIELDS:
            if getattr(record, name, None) is not None:
                log_data[name] = getattr(record, name)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        tags = [str(getattr(record, name)) for name in TAG_FIELDS if getattr(record, name, None) is not None]
        tag = f"<{' @ '.join(tags)}> " if tags else ""
        base = f"{color}[{timestamp}] [{record.levelname:8}]{reset} {record.name}: {tag}{record.getMessage()}"

        # Remaining context, e.g. [query=59RS, http_code=403]
        extras = []
        for name in CONTEXT_FIELDS:
            if name in TAG_FIELDS or getattr(record, name, None) is None:
                continue
            value = str(getattr(record, name))
            # Truncate long queries
            if len(value) > 40:
                value = value[:37] + "..."
            extras.append(f"{name}={value}")

        if extras:
            base += f" [{', '.join(extras)}]"

        if record.exc_info:
            base += f"\n{self.formatException(record.exc_info)}"

        return base


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure logging for the harvester.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatter for machine parsing
        log_file: Optional file path for log output

    Returns:
        Root logger instance
    """
    root_logger = logging.getLogger("harvester")
    root_logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    root_logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)

    if json_format:
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(ReadableFormatter())

    root_logger.addHandler(console_handler)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(f"harvester.{name}")
