"""Metrics collection and threshold alerting.

Every request outcome is folded into a one-hour bucket stored as a hash:

    metrics:hour:{epoch_hour}
        total_requests, total_tokens, total_cost, total_duration,
        error_count, cached_count,
        provider:{key}:requests / tokens / cost / errors

Buckets expire after the retention window (7 days). A capped list of recent
outcomes (``metrics:requests``) backs latency percentiles and exports.

After each record the current bucket is checked against thresholds:
- slow response      -> one alert per occurrence
- hourly tokens      -> one alert per hour (token_limit_{hour})
- hourly cost        -> one alert per hour (cost_threshold_{hour})
- hourly error rate  -> one alert per hour (high_error_rate_{hour})

Alerts live at ``alert:{id}`` for 24h and their ids are listed in
``alerts:active``. Resolved and expired ids are pruned from that index on
each new alert. Recording is best-effort: store failures are logged and
swallowed so telemetry can never fail a request.
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

import structlog

from resilience.config import Settings
from resilience.exceptions import StoreError
from resilience.monitoring.alerts import Alert, AlertKind, AlertSeverity
from resilience.store.backend import KeyValueStore

log = structlog.get_logger(__name__)

_HOUR_NS = "metrics:hour"
_SAMPLES_KEY = "metrics:requests"
_ALERT_NS = "alert"
_ACTIVE_ALERTS_KEY = "alerts:active"


@dataclass
class RequestOutcome:
    """Telemetry for one request through the orchestrator."""

    provider: str
    model: str
    duration_ms: float
    tokens_used: int = 0
    cost: float = 0.0
    success: bool = True
    error_type: str | None = None
    cached: bool = False
    user_id: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class SystemMetrics:
    """Aggregates over the last ``window_hours`` hourly buckets."""

    timestamp: float
    window_hours: int
    total_requests: int = 0
    avg_response_ms: float = 0.0
    p95_response_ms: float = 0.0
    p99_response_ms: float = 0.0
    error_rate: float = 0.0
    cache_hit_rate: float = 0.0
    throughput_per_hour: float = 0.0
    tokens_total: int = 0
    tokens_current_hour: int = 0
    cost_total: float = 0.0
    cost_current_hour: float = 0.0
    per_provider: dict[str, dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "window_hours": self.window_hours,
            "total_requests": self.total_requests,
            "response_time": {
                "avg": round(self.avg_response_ms, 2),
                "p95": round(self.p95_response_ms, 2),
                "p99": round(self.p99_response_ms, 2),
            },
            "error_rate": round(self.error_rate, 4),
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "throughput_per_hour": round(self.throughput_per_hour, 2),
            "token_usage": {
                "total": self.tokens_total,
                "current_hour": self.tokens_current_hour,
            },
            "costs": {
                "total": round(self.cost_total, 6),
                "current_hour": round(self.cost_current_hour, 6),
            },
            "per_provider": self.per_provider,
        }


def _percentile(sorted_values: list[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, math.floor(len(sorted_values) * fraction))
    return sorted_values[index]


class MetricsCollector:
    """Aggregates request telemetry into hourly buckets and raises alerts.

    Usage:
        metrics = MetricsCollector.from_settings(store, settings)
        await metrics.record(RequestOutcome(provider=..., model=..., duration_ms=812))
        snapshot = await metrics.get_system_metrics(24)
        alerts = await metrics.get_active_alerts()
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        slow_response_ms: float = 10000.0,
        high_error_rate: float = 0.05,
        error_rate_min_requests: int = 20,
        hourly_token_limit: int = 25000,
        hourly_cost_threshold: float = 50.0,
        retention_seconds: int = 604800,
        alert_retention_seconds: int = 86400,
        max_active_alerts: int = 100,
        sample_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._slow_response_ms = slow_response_ms
        self._high_error_rate = high_error_rate
        self._error_rate_min_requests = error_rate_min_requests
        self._hourly_token_limit = hourly_token_limit
        self._hourly_cost_threshold = hourly_cost_threshold
        self._retention = retention_seconds
        self._alert_retention = alert_retention_seconds
        self._max_active_alerts = max_active_alerts
        self._sample_size = sample_size
        self._clock = clock

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> MetricsCollector:
        return cls(
            store,
            slow_response_ms=settings.slow_response_ms,
            high_error_rate=settings.high_error_rate,
            error_rate_min_requests=settings.error_rate_min_requests,
            hourly_token_limit=settings.hourly_token_limit,
            hourly_cost_threshold=settings.hourly_cost_threshold,
            retention_seconds=settings.metrics_retention_seconds,
            alert_retention_seconds=settings.alert_retention_seconds,
            max_active_alerts=settings.max_active_alerts,
            sample_size=settings.duration_sample_size,
        )

    def _current_hour(self) -> int:
        return int(self._clock() // 3600)

    @staticmethod
    def _hour_key(hour: int) -> str:
        return f"{_HOUR_NS}:{hour}"

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    async def record(self, outcome: RequestOutcome) -> list[Alert]:
        """Aggregate one outcome and run threshold checks.

        Returns:
            Alerts newly raised by this record (empty on store failure)
        """
        hour = self._current_hour()
        key = self._hour_key(hour)
        prefix = f"provider:{outcome.provider}"
        try:
            await self._store.hincrby(key, "total_requests", 1)
            await self._store.hincrby(key, "total_tokens", outcome.tokens_used)
            await self._store.hincrbyfloat(key, "total_cost", outcome.cost)
            await self._store.hincrby(key, "total_duration", round(outcome.duration_ms))
            if not outcome.success:
                await self._store.hincrby(key, "error_count", 1)
            if outcome.cached:
                await self._store.hincrby(key, "cached_count", 1)
            await self._store.hincrby(key, f"{prefix}:requests", 1)
            await self._store.hincrby(key, f"{prefix}:tokens", outcome.tokens_used)
            await self._store.hincrbyfloat(key, f"{prefix}:cost", outcome.cost)
            if not outcome.success:
                await self._store.hincrby(key, f"{prefix}:errors", 1)
            await self._store.expire(key, self._retention)

            await self._store.lpush(_SAMPLES_KEY, asdict(outcome))
            await self._store.ltrim(_SAMPLES_KEY, 0, self._sample_size - 1)

            raised = await self._check_thresholds(outcome, hour)
        except StoreError as exc:
            log.warning("metrics.record_failed", provider=outcome.provider, error=str(exc))
            return []

        log.debug(
            "metrics.recorded",
            provider=outcome.provider,
            duration_ms=round(outcome.duration_ms, 2),
            tokens=outcome.tokens_used,
            cost=round(outcome.cost, 6),
            success=outcome.success,
        )
        return raised

    async def record_provider_failure(
        self,
        provider: str,
        error: str,
        *,
        severity: AlertSeverity = AlertSeverity.HIGH,
    ) -> Alert | None:
        """Per-attempt telemetry from the gateway when a provider fails."""
        hour = self._current_hour()
        key = self._hour_key(hour)
        alert = Alert(
            id=f"{AlertKind.PROVIDER_DOWN}_{provider}_{hour}",
            kind=AlertKind.PROVIDER_DOWN,
            severity=severity,
            message=f"Provider {provider} failed and was marked unhealthy: {error}",
            timestamp=self._clock(),
            metadata={"provider": provider, "hour": hour},
        )
        try:
            await self._store.hincrby(key, f"provider:{provider}:failures", 1)
            await self._store.expire(key, self._retention)
            stored = await self._store_alert(alert, deduplicate=True)
        except StoreError as exc:
            log.warning("metrics.provider_failure_failed", provider=provider, error=str(exc))
            return None
        return alert if stored else None

    async def _check_thresholds(self, outcome: RequestOutcome, hour: int) -> list[Alert]:
        now = self._clock()
        candidates: list[tuple[Alert, bool]] = []

        if outcome.duration_ms > self._slow_response_ms:
            severity = (
                AlertSeverity.HIGH
                if outcome.duration_ms > 2 * self._slow_response_ms
                else AlertSeverity.MEDIUM
            )
            candidates.append((
                Alert(
                    id=f"{AlertKind.SLOW_RESPONSE}_{int(now * 1000)}_{uuid.uuid4().hex[:8]}",
                    kind=AlertKind.SLOW_RESPONSE,
                    severity=severity,
                    message=(
                        f"Slow response detected: {outcome.duration_ms:.0f}ms "
                        f"(threshold: {self._slow_response_ms:.0f}ms)"
                    ),
                    timestamp=now,
                    metadata={"duration_ms": outcome.duration_ms, "provider": outcome.provider},
                ),
                False,
            ))

        bucket = await self._store.hgetall(self._hour_key(hour))
        tokens = int(bucket.get("total_tokens", "0"))
        cost = float(bucket.get("total_cost", "0"))
        requests = int(bucket.get("total_requests", "0"))
        errors = int(bucket.get("error_count", "0"))

        if tokens > self._hourly_token_limit:
            candidates.append((
                Alert(
                    id=f"{AlertKind.TOKEN_LIMIT}_{hour}",
                    kind=AlertKind.TOKEN_LIMIT,
                    severity=AlertSeverity.HIGH,
                    message=(
                        f"Hourly token limit exceeded: {tokens} tokens "
                        f"(threshold: {self._hourly_token_limit})"
                    ),
                    timestamp=now,
                    metadata={"hourly_tokens": tokens, "hour": hour},
                ),
                True,
            ))

        if cost > self._hourly_cost_threshold:
            candidates.append((
                Alert(
                    id=f"{AlertKind.COST_THRESHOLD}_{hour}",
                    kind=AlertKind.COST_THRESHOLD,
                    severity=AlertSeverity.HIGH,
                    message=(
                        f"Hourly cost threshold exceeded: ${cost:.2f} "
                        f"(threshold: ${self._hourly_cost_threshold:.2f})"
                    ),
                    timestamp=now,
                    metadata={"hourly_cost": cost, "hour": hour},
                ),
                True,
            ))

        if requests >= self._error_rate_min_requests and errors / requests > self._high_error_rate:
            candidates.append((
                Alert(
                    id=f"{AlertKind.HIGH_ERROR_RATE}_{hour}",
                    kind=AlertKind.HIGH_ERROR_RATE,
                    severity=AlertSeverity.MEDIUM,
                    message=(
                        f"High error rate: {errors / requests:.1%} over {requests} requests "
                        f"(threshold: {self._high_error_rate:.1%})"
                    ),
                    timestamp=now,
                    metadata={"error_rate": errors / requests, "hour": hour},
                ),
                True,
            ))

        raised: list[Alert] = []
        for alert, deduplicate in candidates:
            if await self._store_alert(alert, deduplicate=deduplicate):
                raised.append(alert)
        return raised

    async def _store_alert(self, alert: Alert, *, deduplicate: bool) -> bool:
        key = f"{_ALERT_NS}:{alert.id}"
        if deduplicate and await self._store.get(key) is not None:
            return False
        await self._store.set(key, alert.to_dict(), self._alert_retention)
        await self._store.lpush(_ACTIVE_ALERTS_KEY, alert.id)
        await self._prune_active_index()
        log.warning(
            "metrics.alert_raised",
            alert_id=alert.id,
            kind=alert.kind,
            severity=alert.severity,
            message=alert.message,
        )
        return True

    async def _prune_active_index(self) -> None:
        """Drop resolved and expired ids from the active index.

        Above ``max_active_alerts`` the oldest slow-response alerts are dropped
        first. Hourly alert kinds are bounded by their ids and are never
        evicted while unresolved.
        """
        alert_ids = await self._store.lrange(_ACTIVE_ALERTS_KEY, 0, -1)
        live: list[Alert] = []
        seen: set[str] = set()
        for alert_id in alert_ids:
            if alert_id in seen:
                continue
            seen.add(alert_id)
            data = await self._store.get(f"{_ALERT_NS}:{alert_id}")
            if data is not None and not data.get("resolved", False):
                live.append(Alert.from_dict(data))

        overflow = len(live) - self._max_active_alerts
        dropped: set[str] = set()
        for alert in reversed(live):
            if len(dropped) >= overflow:
                break
            if alert.kind == AlertKind.SLOW_RESPONSE:
                dropped.add(alert.id)

        kept = [alert.id for alert in live if alert.id not in dropped]
        if kept == alert_ids:
            return
        if dropped:
            await self._store.delete(*(f"{_ALERT_NS}:{alert_id}" for alert_id in dropped))
            log.info("metrics.alerts_evicted", evicted=len(dropped))
        await self._store.delete(_ACTIVE_ALERTS_KEY)
        for alert_id in reversed(kept):
            await self._store.lpush(_ACTIVE_ALERTS_KEY, alert_id)

    # ------------------------------------------------------------------ #
    # Alerts
    # ------------------------------------------------------------------ #

    async def get_active_alerts(self) -> list[Alert]:
        """Return unresolved, unexpired alerts, newest first."""
        try:
            alert_ids = await self._store.lrange(_ACTIVE_ALERTS_KEY, 0, -1)
            alerts: list[Alert] = []
            seen: set[str] = set()
            for alert_id in alert_ids:
                if alert_id in seen:
                    continue
                seen.add(alert_id)
                data = await self._store.get(f"{_ALERT_NS}:{alert_id}")
                if data is None:
                    continue
                alert = Alert.from_dict(data)
                if not alert.resolved:
                    alerts.append(alert)
        except StoreError as exc:
            log.warning("metrics.active_alerts_failed", error=str(exc))
            return []
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    async def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False if it does not exist."""
        key = f"{_ALERT_NS}:{alert_id}"
        try:
            data = await self._store.get(key)
            if data is None:
                return False
            alert = Alert.from_dict(data)
            alert.resolved = True
            await self._store.set(key, alert.to_dict(), self._alert_retention)
        except StoreError as exc:
            log.warning("metrics.resolve_alert_failed", alert_id=alert_id, error=str(exc))
            return False
        log.info("metrics.alert_resolved", alert_id=alert_id)
        return True

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    async def get_system_metrics(self, window_hours: int = 24) -> SystemMetrics:
        """Aggregate the last window_hours buckets.

        Raises:
            StoreError: If the store cannot be reached
        """
        if window_hours < 1:
            raise ValueError(f"window_hours must be >= 1, got {window_hours}")

        current_hour = self._current_hour()
        snapshot = SystemMetrics(timestamp=self._clock(), window_hours=window_hours)
        total_duration = 0
        total_errors = 0
        total_cached = 0

        for offset in range(window_hours):
            bucket = await self._store.hgetall(self._hour_key(current_hour - offset))
            if not bucket:
                continue
            tokens = int(bucket.get("total_tokens", "0"))
            cost = float(bucket.get("total_cost", "0"))
            snapshot.total_requests += int(bucket.get("total_requests", "0"))
            snapshot.tokens_total += tokens
            snapshot.cost_total += cost
            total_duration += int(bucket.get("total_duration", "0"))
            total_errors += int(bucket.get("error_count", "0"))
            total_cached += int(bucket.get("cached_count", "0"))
            if offset == 0:
                snapshot.tokens_current_hour = tokens
                snapshot.cost_current_hour = cost

            for field_name, raw in bucket.items():
                if not field_name.startswith("provider:"):
                    continue
                provider, metric = field_name[len("provider:") :].rsplit(":", 1)
                stats = snapshot.per_provider.setdefault(provider, {})
                stats[metric] = stats.get(metric, 0) + float(raw)

        if snapshot.total_requests:
            snapshot.avg_response_ms = total_duration / snapshot.total_requests
            snapshot.error_rate = total_errors / snapshot.total_requests
            snapshot.cache_hit_rate = total_cached / snapshot.total_requests
            snapshot.throughput_per_hour = snapshot.total_requests / window_hours

        cutoff = snapshot.timestamp - window_hours * 3600
        samples = await self._store.lrange(_SAMPLES_KEY, 0, -1)
        durations = sorted(
            float(s["duration_ms"]) for s in samples if float(s["timestamp"]) >= cutoff
        )
        snapshot.p95_response_ms = _percentile(durations, 0.95)
        snapshot.p99_response_ms = _percentile(durations, 0.99)
        return snapshot

    async def provider_comparison(self, window_hours: int = 24) -> dict[str, dict[str, float]]:
        """Per-provider tokens, cost, cost-per-token and share of total tokens."""
        snapshot = await self.get_system_metrics(window_hours)
        comparison: dict[str, dict[str, float]] = {}
        for provider, stats in snapshot.per_provider.items():
            tokens = stats.get("tokens", 0.0)
            cost = stats.get("cost", 0.0)
            requests = stats.get("requests", 0.0)
            comparison[provider] = {
                "requests": requests,
                "tokens": tokens,
                "cost": cost,
                "errors": stats.get("errors", 0.0),
                "avg_cost_per_token": cost / tokens if tokens else 0.0,
                "usage_percent": (
                    tokens / snapshot.tokens_total * 100 if snapshot.tokens_total else 0.0
                ),
            }
        return comparison

    async def export(self, window_hours: int = 24) -> list[dict[str, Any]]:
        """Return retained request outcomes in the window, oldest first."""
        cutoff = self._clock() - window_hours * 3600
        samples = await self._store.lrange(_SAMPLES_KEY, 0, -1)
        return sorted(
            (s for s in samples if float(s["timestamp"]) >= cutoff),
            key=lambda s: float(s["timestamp"]),
        )
