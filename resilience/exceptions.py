"""Domain exceptions for the resilience layer.

Single-provider failures (ProviderError and subclasses) are absorbed by the
gateway's failover loop. AllProvidersExhausted is the only error the gateway
lets escape, and the orchestrator converts it into a recovery attempt rather
than surfacing it to the end user.
"""

from __future__ import annotations

from dataclasses import dataclass


class ResilienceError(Exception):
    """Base exception for all resilience-layer failures."""


class ContextTooLarge(ResilienceError):
    """Context alone exceeds the token budget, so chunking cannot help."""

    def __init__(self, context_tokens: int, budget: int) -> None:
        self.context_tokens = context_tokens
        self.budget = budget
        super().__init__(
            f"Context too large: {context_tokens} tokens leave no room "
            f"within the {budget} token budget"
        )


class StoreError(ResilienceError):
    """The shared key-value store is unreachable or not initialized."""


class ProviderError(ResilienceError):
    """A single upstream provider call failed."""


class ProviderRateLimitError(ProviderError):
    """Upstream rate limit exceeded."""


class ProviderUnavailableError(ProviderError):
    """Upstream service is unavailable."""


class ProviderTimeoutError(ProviderError):
    """Upstream call did not complete within the configured timeout."""


@dataclass(frozen=True)
class ProviderAttempt:
    """One failed provider attempt recorded during a gateway invocation."""

    provider: str
    error: str


class AllProvidersExhausted(ResilienceError):
    """Every candidate provider was tried and failed in one invocation."""

    def __init__(self, attempts: list[ProviderAttempt]) -> None:
        self.attempts = attempts
        if attempts:
            detail = "; ".join(f"{a.provider}: {a.error}" for a in attempts)
            message = f"All providers failed ({len(attempts)} attempts): {detail}"
        else:
            message = "No healthy provider available"
        super().__init__(message)
