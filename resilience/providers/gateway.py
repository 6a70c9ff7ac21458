"""Provider gateway - sequential call-with-failover over the provider catalog.

Ordering:
1. Providers the caller prefers (the task router's primary + fallbacks), in
   the given order
2. Every remaining provider, in ascending priority

Attempts are strictly sequential. A later provider is contacted only after
the previous one has definitively failed or timed out, so a request is never
billed twice. Each attempt is bounded by ``asyncio.wait_for``; a timeout is
handled exactly like any other provider failure.

Health state machine (per provider, owned by this class):
    healthy   -> unhealthy   on any exception from a call
    unhealthy -> healthy     once the cooldown has elapsed since the last
                             failure; the next call is the probe

Only AllProvidersExhausted escapes ``call``; single-provider failures are
absorbed here.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from resilience.budget.validator import TokenBudgetValidator
from resilience.config import Settings
from resilience.exceptions import (
    AllProvidersExhausted,
    ProviderAttempt,
    ProviderTimeoutError,
)
from resilience.models import Message, ToolInvocation
from resilience.monitoring.alerts import AlertSeverity
from resilience.monitoring.metrics import MetricsCollector
from resilience.providers.client import LLMClient
from resilience.providers.descriptor import ProviderDescriptor, ProviderHealth
from resilience.safety.filter import SafetyFilter

log = structlog.get_logger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300.0
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class CallOptions:
    """Per-call overrides. Unset fields fall back to gateway defaults."""

    max_tokens: int | None = None
    temperature: float | None = None
    tools: list[dict[str, Any]] | None = None
    preferred: list[str] | None = None  # provider keys, tried first in this order
    timeout: float | None = None


@dataclass
class GatewayResponse:
    """Result of a successful gateway call."""

    content: str
    provider_used: str
    model: str
    tokens_used: int
    cost: float
    duration_ms: float
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    failed_attempts: list[ProviderAttempt] = field(default_factory=list)


def _to_wire(messages: Sequence[Message | dict[str, Any]]) -> list[dict[str, Any]]:
    return [m.to_wire() if isinstance(m, Message) else dict(m) for m in messages]


class ProviderGateway:
    """Holds the ranked provider list, tracks health and executes failover.

    The health table is private. Callers observe it through
    ``available_providers()`` and ``provider_health()`` and influence it only
    by making calls.
    """

    def __init__(
        self,
        providers: Sequence[ProviderDescriptor],
        client: LLMClient,
        *,
        validator: TokenBudgetValidator,
        safety_filter: SafetyFilter | None = None,
        metrics: MetricsCollector | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        keys = [p.key for p in providers]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate provider keys: {keys}")

        self._providers: tuple[ProviderDescriptor, ...] = tuple(
            sorted(providers, key=lambda p: p.priority)
        )
        self._client = client
        self._validator = validator
        self._metrics = metrics
        self._timeout = timeout
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._health: dict[str, ProviderHealth] = {p.key: ProviderHealth() for p in self._providers}

        # Output redaction must know every provider identity this gateway can expose
        if safety_filter is not None:
            terms: list[str] = []
            for p in self._providers:
                terms.extend([p.key, p.model_id, p.model_name, p.name])
            safety_filter.register_leak_terms(terms)

        log.info(
            "gateway.initialized",
            provider_count=len(self._providers),
            providers=[p.key for p in self._providers],
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        providers: Sequence[ProviderDescriptor],
        client: LLMClient,
        *,
        validator: TokenBudgetValidator,
        safety_filter: SafetyFilter | None = None,
        metrics: MetricsCollector | None = None,
    ) -> ProviderGateway:
        return cls(
            providers,
            client,
            validator=validator,
            safety_filter=safety_filter,
            metrics=metrics,
            timeout=settings.provider_timeout_seconds,
            cooldown_seconds=settings.provider_cooldown_seconds,
        )

    # ------------------------------------------------------------------ #
    # Read-only views
    # ------------------------------------------------------------------ #

    @property
    def providers(self) -> tuple[ProviderDescriptor, ...]:
        """All configured providers in ascending priority."""
        return self._providers

    def get_provider(self, key: str) -> ProviderDescriptor | None:
        return next((p for p in self._providers if p.key == key), None)

    def _is_available(self, provider: ProviderDescriptor) -> bool:
        health = self._health[provider.key]
        if health.healthy:
            return True
        if health.last_failure_at is not None and (
            self._clock() - health.last_failure_at >= self._cooldown
        ):
            health.healthy = True
            log.info(
                "gateway.provider_reenabled",
                provider=provider.key,
                cooldown_seconds=self._cooldown,
            )
            return True
        return False

    def available_providers(self) -> list[ProviderDescriptor]:
        """Providers that are healthy or whose cooldown has elapsed, by priority."""
        return [p for p in self._providers if self._is_available(p)]

    def provider_health(self) -> dict[str, ProviderHealth]:
        """Snapshot of the health table (copies, safe to inspect)."""
        for provider in self._providers:
            self._is_available(provider)
        return {key: replace(health) for key, health in self._health.items()}

    # ------------------------------------------------------------------ #
    # Health transitions
    # ------------------------------------------------------------------ #

    def _mark_failed(self, provider: ProviderDescriptor, error: str) -> None:
        health = self._health[provider.key]
        health.healthy = False
        health.last_failure_at = self._clock()
        health.consecutive_failures += 1
        health.last_error = error

    def _mark_succeeded(self, provider: ProviderDescriptor) -> None:
        health = self._health[provider.key]
        health.healthy = True
        health.consecutive_failures = 0
        health.last_error = None

    # ------------------------------------------------------------------ #
    # Call with failover
    # ------------------------------------------------------------------ #

    def _ranked(self, preferred: Sequence[str] | None) -> list[ProviderDescriptor]:
        ordered: list[ProviderDescriptor] = []
        for key in preferred or ():
            provider = self.get_provider(key)
            if provider is not None and provider not in ordered:
                ordered.append(provider)
        ordered.extend(p for p in self._providers if p not in ordered)
        return ordered

    async def call(
        self,
        messages: Sequence[Message | dict[str, Any]],
        options: CallOptions | None = None,
    ) -> GatewayResponse:
        """Call providers in order until one succeeds.

        Args:
            messages: Conversation in Message or OpenAI dict form
            options: Per-call overrides, including the router's preferred order

        Returns:
            GatewayResponse from the first provider that succeeded

        Raises:
            AllProvidersExhausted: No provider produced a response
        """
        options = options or CallOptions()
        wire = _to_wire(messages)
        prompt_tokens = self._validator.estimate_messages(
            [str(m.get("content") or "") for m in wire]
        )
        timeout = options.timeout or self._timeout
        attempts: list[ProviderAttempt] = []

        for provider in self._ranked(options.preferred):
            if not self._is_available(provider):
                log.debug("gateway.provider_skipped", provider=provider.key, reason="unhealthy")
                continue
            if prompt_tokens > provider.max_input_tokens:
                log.info(
                    "gateway.provider_skipped",
                    provider=provider.key,
                    reason="input_too_large",
                    prompt_tokens=prompt_tokens,
                    max_input_tokens=provider.max_input_tokens,
                )
                attempts.append(
                    ProviderAttempt(provider.key, "skipped: input exceeds provider limit")
                )
                continue

            start = time.perf_counter()
            try:
                completion = await asyncio.wait_for(
                    self._client.complete(
                        provider,
                        wire,
                        temperature=options.temperature,
                        max_tokens=options.max_tokens,
                        tools=options.tools,
                    ),
                    timeout=timeout,
                )
            except Exception as exc:
                if isinstance(exc, TimeoutError):
                    exc = ProviderTimeoutError(f"{provider.key} timed out after {timeout}s")
                error = str(exc) or type(exc).__name__
                self._mark_failed(provider, error)
                attempts.append(ProviderAttempt(provider.key, error))
                log.warning(
                    "gateway.provider_failed",
                    provider=provider.key,
                    error=error,
                    error_type=type(exc).__name__,
                    attempt=len(attempts),
                )
                if self._metrics is not None:
                    await self._metrics.record_provider_failure(provider.key, error)
                continue

            duration_ms = (time.perf_counter() - start) * 1000
            self._mark_succeeded(provider)

            tokens_used = completion.total_tokens
            if tokens_used is None:
                tokens_used = prompt_tokens + self._validator.estimate_tokens(completion.content)
            cost = tokens_used * provider.cost_per_token

            log.info(
                "gateway.call_succeeded",
                provider=provider.key,
                duration_ms=round(duration_ms, 2),
                tokens_used=tokens_used,
                cost=round(cost, 6),
                failed_attempts=len(attempts),
            )
            return GatewayResponse(
                content=completion.content,
                provider_used=provider.key,
                model=completion.model,
                tokens_used=tokens_used,
                cost=cost,
                duration_ms=duration_ms,
                tool_calls=completion.tool_calls,
                failed_attempts=attempts,
            )

        log.error(
            "gateway.all_providers_exhausted",
            attempts=[f"{a.provider}: {a.error}" for a in attempts],
        )
        if self._metrics is not None:
            await self._metrics.record_provider_failure(
                "all_providers",
                f"{len(attempts)} attempts failed",
                severity=AlertSeverity.CRITICAL,
            )
        raise AllProvidersExhausted(attempts)
