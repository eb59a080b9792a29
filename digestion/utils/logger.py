"""
Logging Configuration Module

Provides structured logging for the worker and API with JSON formatting for
production and human-readable formatting for development.
"""

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from digestion.config import config

# Context attributes copied from `extra=` into every formatted record
CONTEXT_FIELDS = (
    "job_id",
    "capture_id",
    "user_id",
    "message_id",
    "retry_count",
    "duration_ms",
    "error_message",
    "stack_trace",
    "job_payload",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for development environment."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    # Multi-line fields are printed after the message rather than inline
    BLOCK_FIELDS = {"stack_trace", "job_payload"}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        color = self.COLORS.get(record.levelname, self.RESET)
        levelname = f"{color}{record.levelname}{self.RESET}"

        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        base_msg = f"{timestamp} | {levelname:18} | {record.name} | {record.getMessage()}"

        extras = []
        blocks = []
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            if field in self.BLOCK_FIELDS:
                blocks.append(f"{field}: {value}")
            elif field == "duration_ms":
                extras.append(f"duration={value}ms")
            else:
                extras.append(f"{field}={value}")

        if extras:
            base_msg += f" [{', '.join(extras)}]"
        for block in blocks:
            base_msg += f"\n{block}"

        # Add exception info if present
        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging() -> None:
    """Configure logging for the worker or API process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))

    # Select formatter based on environment
    if config.is_production:
        formatter = JSONFormatter()
    else:
        formatter = ColoredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("arq").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name, typically __name__ from the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class JobLogger:
    """Context manager for job-specific logging with timing."""

    def __init__(
        self,
        logger: logging.Logger,
        job_name: str,
        job_id: str | None = None,
        **extra: Any,
    ) -> None:
        self.logger = logger
        self.job_name = job_name
        self.job_id = job_id
        self.extra = extra
        self.start_time: float | None = None

    def __enter__(self) -> "JobLogger":
        self.start_time = time.perf_counter()
        self.logger.info(
            f"Starting job: {self.job_name}",
            extra={"job_id": self.job_id, **self.extra},
        )
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        duration_ms = int((time.perf_counter() - (self.start_time or 0)) * 1000)

        if exc_type is not None:
            self.logger.error(
                f"Job failed: {self.job_name} - {exc_val}",
                extra={"job_id": self.job_id, "duration_ms": duration_ms, **self.extra},
                exc_info=True,
            )
        else:
            self.logger.info(
                f"Job completed: {self.job_name}",
                extra={"job_id": self.job_id, "duration_ms": duration_ms, **self.extra},
            )
