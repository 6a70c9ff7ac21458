"""Alert types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class AlertKind(StrEnum):
    SLOW_RESPONSE = "slow_response"
    HIGH_ERROR_RATE = "high_error_rate"
    TOKEN_LIMIT = "token_limit"
    COST_THRESHOLD = "cost_threshold"
    PROVIDER_DOWN = "provider_down"


class AlertSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A threshold breach.

    Hourly kinds use a deterministic id ``{kind}_{hour}`` (plus the provider
    for provider_down) so repeated breaches within one hour collapse into a
    single alert. Slow-response alerts are per occurrence.
    """

    id: str
    kind: AlertKind
    severity: AlertSeverity
    message: str
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)
    resolved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "severity": str(self.severity),
            "message": self.message,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
            "resolved": self.resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            id=data["id"],
            kind=AlertKind(data["kind"]),
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
            timestamp=float(data["timestamp"]),
            metadata=data.get("metadata", {}),
            resolved=bool(data.get("resolved", False)),
        )
