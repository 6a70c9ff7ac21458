"""Structured logging setup and log-context helpers."""

from resilience.telemetry.logging import (
    bind_thread_context,
    bind_turn_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "configure_logging",
    "bind_thread_context",
    "bind_turn_context",
    "clear_context",
]
