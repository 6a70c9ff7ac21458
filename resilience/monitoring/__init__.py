"""Request metrics aggregation and threshold alerting.

Public API:
    MetricsCollector - Hourly-bucketed request telemetry with alerting
    RequestOutcome   - One request's telemetry, as recorded
    SystemMetrics    - Aggregated snapshot over a window of hours
    Alert            - A raised threshold alert
    AlertKind        - slow_response, high_error_rate, token_limit, ...
    AlertSeverity    - low, medium, high, critical
"""

from resilience.monitoring.alerts import Alert, AlertKind, AlertSeverity
from resilience.monitoring.metrics import (
    MetricsCollector,
    RequestOutcome,
    SystemMetrics,
)

__all__ = [
    "MetricsCollector",
    "RequestOutcome",
    "SystemMetrics",
    "Alert",
    "AlertKind",
    "AlertSeverity",
]
