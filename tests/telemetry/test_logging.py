"""Tests for structured logging configuration and context helpers."""

from __future__ import annotations

import logging

import structlog

from resilience.telemetry.logging import (
    bind_thread_context,
    bind_turn_context,
    clear_context,
    configure_logging,
    mask_credentials,
)


class TestMaskCredentials:
    def test_masks_api_keys_in_values(self):
        event = {"event": "gateway.provider_failed", "error": "Invalid key sk-abcdef1234567890"}

        result = mask_credentials(None, "warning", event)

        assert result["error"] == "Invalid key [MASKED]"
        assert result["event"] == "gateway.provider_failed"

    def test_masks_bearer_tokens(self):
        event = {"event": "x", "header": "Bearer abcdefghijklmnop"}
        assert mask_credentials(None, "info", event)["header"] == "[MASKED]"

    def test_provider_names_left_alone(self):
        event = {"event": "x", "provider": "openai-gpt-4o", "tokens": 12}
        assert mask_credentials(None, "info", dict(event)) == event


class TestContextHelpers:
    def teardown_method(self):
        clear_context()

    def test_thread_and_turn_bound(self):
        bind_thread_context("thread-1")
        bind_turn_context("turn-9")

        context = structlog.contextvars.get_contextvars()

        assert context == {"thread_id": "thread-1", "turn_id": "turn-9"}

    def test_missing_thread_not_bound(self):
        bind_thread_context(None)
        assert "thread_id" not in structlog.contextvars.get_contextvars()

    def test_clear_context(self):
        bind_turn_context("turn-1")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestConfigureLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_json_pipeline_ends_with_json_renderer(self):
        configure_logging(json_logs=True, log_level="WARNING")

        processors = structlog.get_config()["processors"]

        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert mask_credentials in processors

    def test_json_pipeline_masks_formatted_tracebacks(self):
        configure_logging(json_logs=True, log_level="WARNING")
        processors = structlog.get_config()["processors"]
        start = processors.index(structlog.processors.format_exc_info)

        assert processors.index(mask_credentials) > start

        try:
            raise RuntimeError("Invalid key sk-abcdef1234567890")
        except RuntimeError as exc:
            event = {"event": "orchestrator.turn_failed", "exc_info": exc}
        for processor in processors[start:-1]:
            event = processor(None, "error", event)

        assert "sk-abcdef1234567890" not in event["exception"]
        assert "[MASKED]" in event["exception"]

    def test_console_pipeline_in_dev(self):
        configure_logging(json_logs=False)

        processors = structlog.get_config()["processors"]

        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_third_party_loggers_quieted(self):
        configure_logging(log_level="DEBUG")
        assert logging.getLogger("LiteLLM").level == logging.WARNING
