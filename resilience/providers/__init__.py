"""Upstream provider catalog, LiteLLM client and failover gateway.

Public API:
    ModelTier            - Capability tiers used for routing (light/standard/heavy)
    ProviderDescriptor   - Static description of one provider + model
    ProviderHealth       - Health record owned by the gateway
    default_catalog      - Provider list built from configured API keys
    LLMClient            - LiteLLM wrapper with transient-error retries
    Completion           - Normalized completion result
    ProviderGateway      - Sequential call-with-failover over the catalog
    CallOptions          - Per-call overrides (tokens, tools, preferred order)
    GatewayResponse      - Result of a successful gateway call
"""

from resilience.providers.client import Completion, LLMClient
from resilience.providers.descriptor import (
    ModelTier,
    ProviderDescriptor,
    ProviderHealth,
    default_catalog,
)
from resilience.providers.gateway import CallOptions, GatewayResponse, ProviderGateway

__all__ = [
    "ModelTier",
    "ProviderDescriptor",
    "ProviderHealth",
    "default_catalog",
    "LLMClient",
    "Completion",
    "ProviderGateway",
    "CallOptions",
    "GatewayResponse",
]
