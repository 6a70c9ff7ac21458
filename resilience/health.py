"""
Component health checks for the resilience layer.

Two components are checked concurrently:
- store: key-value store PING, bounded by a timeout. The store only backs
  caching, checkpoints and metrics, so a failure here degrades the layer
  but never takes it down.
- providers: how many providers are configured and how many are currently
  eligible (healthy or past their cooldown).

The layer keeps serving (HTTP 200) while degraded and reports unhealthy
(HTTP 503) only when no provider can be tried.

Serialized form:
    {
        "status": "degraded",
        "timestamp": "2026-03-02T08:15:00+00:00",
        "duration_ms": 3.4,
        "components": {
            "store": {"status": "healthy", "latency_ms": 1.1, "details": {}, "error": null},
            "providers": {"status": "degraded", "details": {"configured": 4, "available": 3}}
        }
    }
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from resilience.providers.gateway import ProviderGateway
from resilience.store.backend import KeyValueStore

log = structlog.get_logger(__name__)


class ComponentStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    status: ComponentStatus
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "latency_ms": self.latency_ms,
            "details": self.details,
            "error": self.error,
        }


@dataclass
class SystemHealth:
    """Aggregated result of one health run."""

    status: ComponentStatus
    components: dict[str, ComponentHealth]
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    duration_ms: float = 0.0

    @property
    def is_serving(self) -> bool:
        """Degraded still serves traffic; only unhealthy does not."""
        return self.status != ComponentStatus.UNHEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "components": {name: health.to_dict() for name, health in self.components.items()},
        }


class HealthCheck:
    """Store connectivity and provider availability for the facade and /health."""

    def __init__(
        self,
        store: KeyValueStore,
        gateway: ProviderGateway,
        *,
        check_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._check_timeout = check_timeout
        self._checks: dict[str, Callable[[], Awaitable[ComponentHealth]]] = {
            "store": self._check_store,
            "providers": self._check_providers,
        }

    async def check_all(self) -> SystemHealth:
        started = time.perf_counter()
        outcomes = await asyncio.gather(
            *(check() for check in self._checks.values()),
            return_exceptions=True,
        )

        components: dict[str, ComponentHealth] = {}
        for name, outcome in zip(self._checks, outcomes):
            if isinstance(outcome, BaseException):
                log.error("health_check.check_crashed", component=name, error=str(outcome))
                outcome = ComponentHealth(status=ComponentStatus.UNHEALTHY, error=str(outcome))
            components[name] = outcome

        result = SystemHealth(
            status=self._aggregate_status(components),
            components=components,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        log.info(
            "health_check.completed",
            status=result.status,
            duration_ms=result.duration_ms,
            components={name: health.status for name, health in components.items()},
        )
        return result

    async def _check_store(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._store.ping(), timeout=self._check_timeout)
        except TimeoutError:
            log.warning("health_check.store_timeout", timeout=self._check_timeout)
            return ComponentHealth(status=ComponentStatus.DEGRADED, error="Store PING timeout")
        except Exception as exc:
            log.warning("health_check.store_failed", error=str(exc))
            return ComponentHealth(status=ComponentStatus.DEGRADED, error=str(exc))

        return ComponentHealth(
            status=ComponentStatus.HEALTHY,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    async def _check_providers(self) -> ComponentHealth:
        configured = len(self._gateway.providers)
        available = len(self._gateway.available_providers())
        details = {"configured": configured, "available": available}

        if not configured:
            error = "No provider configured"
        elif not available:
            error = "All providers cooling down"
        else:
            status = (
                ComponentStatus.HEALTHY if available == configured else ComponentStatus.DEGRADED
            )
            return ComponentHealth(status=status, details=details)
        return ComponentHealth(status=ComponentStatus.UNHEALTHY, details=details, error=error)

    @staticmethod
    def _aggregate_status(components: dict[str, ComponentHealth]) -> ComponentStatus:
        """Providers decide serving; any other problem only degrades."""
        providers = components.get("providers")
        if providers is not None and providers.status == ComponentStatus.UNHEALTHY:
            return ComponentStatus.UNHEALTHY
        if all(health.status == ComponentStatus.HEALTHY for health in components.values()):
            return ComponentStatus.HEALTHY
        return ComponentStatus.DEGRADED
