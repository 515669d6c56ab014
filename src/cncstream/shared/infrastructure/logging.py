"""
Structured logging configuration using structlog.

Provides consistent, structured logging across all modules.
"""

import logging
import re
import sys
from typing import Any

import structlog

from cncstream.shared.infrastructure.config import settings

_REDACTIONS = {
    r"/Users/[^/\s]+": "[HOME_REDACTED]",
    r"/home/[^/\s]+": "[HOME_REDACTED]",
}


def privacy_redactor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Redact home directories from logged file paths.

    G-code files usually live under a user's home; checkpoint and analysis
    events log their paths.
    """
    if not settings.log_redaction_enabled:
        return event_dict

    def redact_string(text: str) -> str:
        for pattern, replacement in _REDACTIONS.items():
            text = re.sub(pattern, replacement, text)
        return text

    def redact(value: Any) -> Any:
        if isinstance(value, str):
            return redact_string(value)
        if isinstance(value, dict):
            return {k: redact(v) for k, v in value.items()}
        if isinstance(value, list):
            return [redact(v) for v in value]
        return value

    return {k: redact(v) for k, v in event_dict.items()}


def configure_logging(stream: Any = sys.stderr) -> None:
    """
    Configure structlog for the application.

    Sets up:
    - JSON output for production
    - Pretty console output for development
    - Log level from settings
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        privacy_redactor,
    ]

    if settings.is_development:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=stream.isatty() if hasattr(stream, "isatty") else False),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level),
        force=True,
    )


def get_logger(name: str) -> Any:
    """
    Get a structured logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("chunk_processing_completed", index=3, lines=1000)
    """
    return structlog.get_logger(name)
