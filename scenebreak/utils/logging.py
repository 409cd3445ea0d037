"""
Logging configuration for the scenebreak system.

This module sets up structured logging with both console and file outputs,
including context tracking (project, scene, job, caller) and timing records.
"""

import contextvars
import functools
import inspect
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler

from scenebreak.config import get_settings

_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    ]
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
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

        # Add extra fields if present
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ContextFilter(logging.Filter):
    """Add context information to log records.

    Context lives in a ContextVar, so each asyncio task sees only the
    fields set by its own LogContext blocks.
    """

    def __init__(self) -> None:
        """Initialize the context filter."""
        super().__init__()
        self._context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
            "scenebreak_log_context", default={}
        )

    @property
    def context(self) -> dict[str, Any]:
        """Context values visible to the current task."""
        return dict(self._context.get())

    def set_context(self, **kwargs: Any) -> contextvars.Token:
        """Set context values for the current task."""
        return self._context.set({**self._context.get(), **kwargs})

    def reset_context(self, token: contextvars.Token) -> None:
        """Restore the context that was active before `set_context`."""
        self._context.reset(token)

    def clear_context(self) -> None:
        """Clear all context values."""
        self._context.set({})

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context to the log record."""
        for key, value in self._context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


# Global context filter instance
context_filter = ContextFilter()


def setup_logging(
    log_level: Optional[str] = None,
    log_file_path: Optional[Path] = None,
    use_structured_logging: bool = True,
) -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (defaults to settings)
        log_file_path: Path to log file (defaults to settings)
        use_structured_logging: Use JSON structured logging for files
    """
    settings = get_settings()

    log_level = log_level or settings.log_level
    log_file_path = log_file_path or settings.get_log_file_path()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # Console handler with Rich formatting
    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=settings.dev_mode,
    )
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    if log_file_path:
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)

        if use_structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )

        root_logger.addHandler(file_handler)

    # Configure third-party loggers
    for noisy in ("httpx", "httpcore", "openai", "fitz", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "log_file": str(log_file_path) if log_file_path else None,
            "structured_logging": use_structured_logging,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(self, **kwargs: Any) -> None:
        """Initialize with context values."""
        self.context = kwargs
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LogContext":
        """Enter the context and set values."""
        self._token = context_filter.set_context(**self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the context and restore old values."""
        if self._token is not None:
            context_filter.reset_context(self._token)
            self._token = None


def log_performance(func):
    """
    Decorator to log function performance.

    Usage:
        @log_performance
        def parse(data: bytes, format_hint: str) -> ParsedScreenplay:
            ...
    """

    @functools.wraps(func)
    async def async_wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        start_time = time.perf_counter()

        try:
            with LogContext(function=func.__name__):
                logger.debug(f"Starting {func.__name__}")
                result = await func(*args, **kwargs)
                logger.debug(
                    f"Completed {func.__name__}",
                    extra={"duration_seconds": time.perf_counter() - start_time},
                )
                return result
        except Exception as e:
            logger.error(
                f"Failed {func.__name__}",
                extra={"duration_seconds": time.perf_counter() - start_time, "error": str(e)},
            )
            raise

    @functools.wraps(func)
    def sync_wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        start_time = time.perf_counter()

        try:
            with LogContext(function=func.__name__):
                logger.debug(f"Starting {func.__name__}")
                result = func(*args, **kwargs)
                logger.debug(
                    f"Completed {func.__name__}",
                    extra={"duration_seconds": time.perf_counter() - start_time},
                )
                return result
        except Exception as e:
            logger.error(
                f"Failed {func.__name__}",
                extra={"duration_seconds": time.perf_counter() - start_time, "error": str(e)},
            )
            raise

    if inspect.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper
