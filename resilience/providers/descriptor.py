"""Provider descriptors and the default catalog.

Default catalog (only providers with a configured API key are included):
- openai/gpt-4o                          priority 1, HEAVY
- anthropic/claude-3-5-sonnet-20240620   priority 2, STANDARD
- openai/gpt-3.5-turbo                   priority 3, LIGHT
- gemini/gemini-1.5-pro                  priority 4, STANDARD

Lower priority is preferred. Costs are per-token estimates used for
alerting, not invoicing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from resilience.config import Settings


class ModelTier(str, Enum):
    """Model capability tiers for routing decisions."""

    LIGHT = "light"  # Fast, cheap models for simple tasks
    STANDARD = "standard"  # Balanced performance/cost for most tasks
    HEAVY = "heavy"  # Most capable models for complex reasoning


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one upstream provider + model.

    Attributes:
        name: Provider family (e.g. "openai")
        model_id: LiteLLM model identifier (e.g. "openai/gpt-4o")
        priority: Rank in the default failover order, lower is preferred
        max_input_tokens: Largest prompt the model accepts
        cost_per_token: Estimated blended cost per token in USD
        tier: Capability tier used by the task router
        capability: Base capability weight used in suitability scoring
        api_key: Credential passed to LiteLLM (never logged)
    """

    name: str
    model_id: str
    priority: int
    max_input_tokens: int
    cost_per_token: float
    tier: ModelTier = ModelTier.STANDARD
    capability: int = 2
    api_key: str | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not self.model_id:
            raise ValueError("name and model_id are required")
        if self.max_input_tokens < 1:
            raise ValueError("max_input_tokens must be positive")
        if self.cost_per_token < 0:
            raise ValueError("cost_per_token must be non-negative")

    @property
    def model_name(self) -> str:
        """Model identifier without the LiteLLM provider prefix."""
        return self.model_id.rsplit("/", 1)[-1]

    @property
    def key(self) -> str:
        """Stable identifier used in the health table, metrics and logs."""
        return f"{self.name}-{self.model_name}"


@dataclass
class ProviderHealth:
    """Mutable health record. Owned and mutated only by ProviderGateway."""

    healthy: bool = True
    last_failure_at: float | None = None
    consecutive_failures: int = 0
    last_error: str | None = None


def default_catalog(settings: Settings) -> list[ProviderDescriptor]:
    """Build the provider list from whichever API keys are configured."""
    keys = settings.configured_provider_keys
    catalog: list[ProviderDescriptor] = []

    if "openai" in keys:
        catalog.append(
            ProviderDescriptor(
                name="openai",
                model_id="openai/gpt-4o",
                priority=1,
                max_input_tokens=30000,
                cost_per_token=0.00003,
                tier=ModelTier.HEAVY,
                capability=5,
                api_key=keys["openai"],
            )
        )
    if "anthropic" in keys:
        catalog.append(
            ProviderDescriptor(
                name="anthropic",
                model_id="anthropic/claude-3-5-sonnet-20240620",
                priority=2,
                max_input_tokens=200000,
                cost_per_token=0.000015,
                tier=ModelTier.STANDARD,
                capability=4,
                api_key=keys["anthropic"],
            )
        )
    if "openai" in keys:
        catalog.append(
            ProviderDescriptor(
                name="openai",
                model_id="openai/gpt-3.5-turbo",
                priority=3,
                max_input_tokens=16000,
                cost_per_token=0.000002,
                tier=ModelTier.LIGHT,
                capability=3,
                api_key=keys["openai"],
            )
        )
    if "google" in keys:
        catalog.append(
            ProviderDescriptor(
                name="google",
                model_id="gemini/gemini-1.5-pro",
                priority=4,
                max_input_tokens=1000000,
                cost_per_token=0.0000075,
                tier=ModelTier.STANDARD,
                capability=2,
                api_key=keys["google"],
            )
        )

    return sorted(catalog, key=lambda p: p.priority)
