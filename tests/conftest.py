"""
Shared test fixtures for pytest.

Provides common fakes for all test modules:
- fake_settings: Test environment configuration (in-memory store)
- store: Initialized InMemoryStore
- providers: A three-provider catalog covering every capability tier
- make_completion: Helper to build Completion results
- fake_client: AsyncMock LLMClient whose replies are set per test
- validator / safety_filter: Default pure components
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from resilience.budget.validator import TokenBudgetValidator
from resilience.config import Environment, Settings, get_settings
from resilience.models import ToolInvocation
from resilience.providers.client import Completion, LLMClient
from resilience.providers.descriptor import ModelTier, ProviderDescriptor
from resilience.safety.filter import SafetyFilter
from resilience.store.backend import InMemoryStore


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Settings & store
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        store_backend="memory",
        openai_api_key="sk-test-openai-key",
        anthropic_api_key="sk-test-anthropic-key",
        provider_timeout_seconds=2.0,
        provider_retry_attempts=1,
        debug=True,
    )


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[InMemoryStore, None]:
    """Initialized in-memory store, closed after the test."""
    backend = InMemoryStore()
    await backend.initialize()
    yield backend
    await backend.close()


class FakeClock:
    """Manually advanced clock for TTL, cooldown and bucket tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ------------------------------------------------------------------ #
# Providers
# ------------------------------------------------------------------ #

@pytest.fixture
def heavy_provider() -> ProviderDescriptor:
    return ProviderDescriptor(
        name="openai",
        model_id="openai/gpt-4o",
        priority=1,
        max_input_tokens=30000,
        cost_per_token=0.00003,
        tier=ModelTier.HEAVY,
        capability=5,
    )


@pytest.fixture
def standard_provider() -> ProviderDescriptor:
    return ProviderDescriptor(
        name="anthropic",
        model_id="anthropic/claude-3-5-sonnet-20240620",
        priority=2,
        max_input_tokens=200000,
        cost_per_token=0.000015,
        tier=ModelTier.STANDARD,
        capability=4,
    )


@pytest.fixture
def light_provider() -> ProviderDescriptor:
    return ProviderDescriptor(
        name="openai",
        model_id="openai/gpt-3.5-turbo",
        priority=3,
        max_input_tokens=16000,
        cost_per_token=0.000002,
        tier=ModelTier.LIGHT,
        capability=3,
    )


@pytest.fixture
def providers(
    heavy_provider: ProviderDescriptor,
    standard_provider: ProviderDescriptor,
    light_provider: ProviderDescriptor,
) -> list[ProviderDescriptor]:
    return [heavy_provider, standard_provider, light_provider]


def make_completion(
    content: str = "Hello from the model.",
    *,
    model: str = "test-model",
    tool_calls: list[ToolInvocation] | None = None,
    prompt_tokens: int | None = 10,
    completion_tokens: int | None = 5,
) -> Completion:
    return Completion(
        content=content,
        model=model,
        tool_calls=tool_calls or [],
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )


@pytest.fixture
def fake_client() -> AsyncMock:
    """LLMClient double. Tests set ``complete.return_value`` or ``side_effect``."""
    client = AsyncMock(spec=LLMClient)
    client.complete.return_value = make_completion()
    return client


# ------------------------------------------------------------------ #
# Pure components
# ------------------------------------------------------------------ #

@pytest.fixture
def validator() -> TokenBudgetValidator:
    return TokenBudgetValidator()


@pytest.fixture
def safety_filter() -> SafetyFilter:
    return SafetyFilter()


@pytest.fixture
def completion():
    """Factory fixture for Completion results (see make_completion)."""
    return make_completion
