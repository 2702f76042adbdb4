"""Structured logging for the Content Experimentation Engine.

This module provides structured logging with:
- Correlation ID generation and propagation
- JSON output for production, pretty output for development
- Common fields (engine version, hostname) on every event
- Credential redaction for keys such as database passwords
- Integration with Python's standard logging

Example usage:
    from cee.core.logging import configure_logging, get_logger, correlation_context

    configure_logging()
    logger = get_logger(__name__)

    logger.info("experiment_started", experiment_id=12, variants=3)

    async with correlation_context("ingest-batch-7"):
        logger.info("results_recorded")  # Includes correlation_id
"""

import logging
import re
import socket
import sys
import uuid
from contextvars import ContextVar
from functools import lru_cache
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from cee import __version__

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_bound_context: ContextVar[dict[str, Any]] = ContextVar("bound_context", default={})

SENSITIVE_KEY_PATTERNS = frozenset(
    {
        "password",
        "passwd",
        "secret",
        "token",
        "api_key",
        "authorization",
        "credential",
    }
)

# user:password@ in connection URLs
_URL_CREDENTIALS = re.compile(r"(://[^:/@\s]+):[^@\s]+@")


def generate_correlation_id() -> str:
    """Generate a unique correlation ID.

    Returns:
        A UUID4 string.
    """
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID in the current context."""
    _correlation_id.set(correlation_id)


class correlation_context:
    """Context manager for correlation ID propagation.

    Example:
        async with correlation_context("req-123"):
            logger.info("processing")  # Includes correlation_id="req-123"
    """

    def __init__(self, correlation_id: str | None = None) -> None:
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token: Any = None

    def __enter__(self) -> str:
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, *args: Any) -> None:
        _correlation_id.reset(self._token)

    async def __aenter__(self) -> str:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


class bind_context:
    """Context manager to bind additional fields to every log event.

    Example:
        with bind_context(experiment_id=12, actor="user-7"):
            logger.info("variant_added")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.ctx = kwargs
        self._token: Any = None

    def __enter__(self) -> "bind_context":
        new_context = {**_bound_context.get(), **self.ctx}
        self._token = _bound_context.set(new_context)
        return self

    def __exit__(self, *args: Any) -> None:
        _bound_context.reset(self._token)


# =============================================================================
# Structlog Processors
# =============================================================================


def add_correlation_id(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add correlation ID to log events if available."""
    correlation_id = get_correlation_id()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_bound_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add bound context variables to log events."""
    for key, value in _bound_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


@lru_cache(maxsize=1)
def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def add_common_fields(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add engine version and hostname."""
    event_dict.setdefault("cee_version", __version__)
    event_dict.setdefault("hostname", _get_hostname())
    return event_dict


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_KEY_PATTERNS)


def redact_credentials(text: str) -> str:
    """Mask the password part of connection URLs embedded in text."""
    return _URL_CREDENTIALS.sub(r"\1:***@", text)


def redact_sensitive_data(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Redact sensitive keys and URL credentials from log events."""
    redacted: EventDict = {}
    for key, value in event_dict.items():
        if _is_sensitive_key(key):
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted[key] = redact_credentials(value)
        else:
            redacted[key] = value
    return redacted


def sanitize_event(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Escape line breaks in the event name to prevent log injection."""
    event = event_dict.get("event", "")
    if isinstance(event, str):
        event_dict["event"] = event.replace("\r", "\\r").replace("\n", "\\n")
    return event_dict


# =============================================================================
# Logging Configuration
# =============================================================================


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_correlation_id,
        add_bound_context,
        add_common_fields,
        redact_sensitive_data,
        sanitize_event,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.processors.format_exc_info,
    ]


def configure_logging(
    level: str | int = logging.INFO,
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Use JSON output format. If None, auto-detects:
            True if stderr is not a TTY, False otherwise.
        log_file: Optional file path for log output.
    """
    if json_output is None:
        json_output = not sys.stderr.isatty()

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = _shared_processors()

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if json_output:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def configure_logging_from_settings(settings: Any) -> None:
    """Configure logging from a ``CEESettings`` instance."""
    configure_logging(
        level=settings.logging.level,
        json_output=settings.logging.json_output,
        log_file=settings.logging.file,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        A structured logger instance.
    """
    return structlog.get_logger(name)


def reset_logging() -> None:
    """Reset logging configuration to defaults (for tests)."""
    _correlation_id.set(None)
    _bound_context.set({})
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
