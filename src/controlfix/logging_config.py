"""
Structured logging configuration for ControlFix.

Logs are emitted as one JSON object per line. Besides the standard fields,
every record carries the execution and batch identifiers of the work that
produced it, so the log stream of one remediation can be filtered out of
a concurrent batch.

Log Format:
    {
        "timestamp": "2026-03-02T10:30:00.123+00:00",
        "level": "INFO",
        "logger": "controlfix.coordinator",
        "execution_id": "6f1c...",
        "batch_id": "b-91ad...",
        "message": "Execution completed",
        "finding_id": "finding-001",
        ...additional context...
    }

Usage:
    from controlfix.logging_config import setup_logging, get_logger, log_with_context

    setup_logging(log_level="INFO")
    logger = get_logger(__name__)

    with ExecutionLogContext(execution.execution_id):
        log_with_context(logger, "info", "Capturing snapshot", resource_id=rid)
"""

import json
import logging
import sys
from collections.abc import Callable
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from types import TracebackType
from typing import TextIO

from typing_extensions import override

# asyncio tasks copy the current context, so values set before a task is
# created are visible inside it and values set inside stay local to it
_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_batch_id: ContextVar[str | None] = ContextVar("batch_id", default=None)

_STANDARD_ATTRS = frozenset(
    {
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
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders each record as a JSON object.

    Extra fields passed through ``log_with_context`` become top-level keys.
    Values that are not JSON serializable are rendered with ``str``.
    """

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "execution_id": get_execution_id(),
            "batch_id": get_batch_id(),
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(log_level: str = "INFO", stream: TextIO | None = None) -> None:
    """
    Configure structured logging on stdout (or the given stream).

    Should be called once at startup. Replaces any handlers already
    attached to the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Where log lines go (default: stdout)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    for noisy in ("boto3", "botocore", "urllib3", "redis", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger for a module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_execution_id() -> str | None:
    """Return the execution id bound to the current context, if any."""
    return _execution_id.get()


def get_batch_id() -> str | None:
    """Return the batch id bound to the current context, if any."""
    return _batch_id.get()


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """
    Log message with additional structured context.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Human-readable log message
        **context: Additional context fields as keyword arguments

    Example:
        >>> log_with_context(
        ...     logger,
        ...     "info",
        ...     "Strategy applied",
        ...     finding_id="finding-001",
        ...     strategy="declarative",
        ... )
    """
    log_func: Callable[..., None] = getattr(logger, level.lower())
    log_func(message, extra=dict(context))


class _ScopedId:
    """Binds a value to a context variable for the duration of a block."""

    _var: ContextVar[str | None]

    def __init__(self, value: str) -> None:
        self.value: str = value
        self._token: Token[str | None] | None = None

    def __enter__(self) -> str:
        self._token = self._var.set(self.value)
        return self.value

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            self._var.reset(self._token)
            self._token = None


class ExecutionLogContext(_ScopedId):
    """
    Tag every log record inside the block with an execution id.

    Example:
        >>> with ExecutionLogContext(execution.execution_id):
        ...     logger.info("Validating")
    """

    _var = _execution_id


class BatchLogContext(_ScopedId):
    """Tag every log record inside the block with a batch id."""

    _var = _batch_id
