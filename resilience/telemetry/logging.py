"""Structured logging configuration.

Configures structlog with JSON output in production and a colored console
renderer in development. Every module obtains its logger with
``structlog.get_logger(__name__)`` and logs dotted event names with keyword
fields, e.g. ``log.info("gateway.call_succeeded", provider=..., duration_ms=...)``.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "resilience.providers.gateway",
        "event": "gateway.call_succeeded",
        "thread_id": "thread-42",
        "turn_id": "turn_9f2c...",
        "provider": "anthropic-claude-3-5-sonnet-20240620",
        "duration_ms": 812.4
    }

Provider identity is operator-facing only. It may appear in logs but is never
part of a message returned to the end user.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Credentials that can surface in provider error messages
_CREDENTIAL_RE = re.compile(
    r"\b(?:sk|pk|rk)-[A-Za-z0-9_-]{8,}|\bBearer\s+[A-Za-z0-9._~+/-]{10,}=*|\bAIza[0-9A-Za-z_-]{20,}"
)

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx", "httpcore")


def mask_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask API keys and bearer tokens in string values of a log event."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _CREDENTIAL_RE.sub("[MASKED]", value)
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            mask_credentials,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            mask_credentials,
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_thread_context(thread_id: str | None) -> None:
    """Bind the conversation thread ID to log context for this turn."""
    if thread_id:
        structlog.contextvars.bind_contextvars(thread_id=thread_id)


def bind_turn_context(turn_id: str) -> None:
    """Bind a per-turn correlation ID to log context.

    Args:
        turn_id: Identifier generated by the orchestrator for one turn
    """
    structlog.contextvars.bind_contextvars(turn_id=turn_id)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
