"""Operational API endpoints.

GET  /health                     - Component health (503 when unhealthy)
GET  /metrics?hours=24           - Metrics snapshot over a window of hours
GET  /alerts                     - Active (unresolved) alerts, newest first
POST /alerts/{alert_id}/resolve  - Mark an alert resolved

The orchestrator is resolved via FastAPI dependency injection so it can be
replaced in tests with app.dependency_overrides.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from resilience.exceptions import StoreError
from resilience.orchestrator import Orchestrator

log = structlog.get_logger(__name__)

router = APIRouter(tags=["operations"])


def get_orchestrator(request: Request) -> Orchestrator:
    """Return the orchestrator the application lifespan owns."""
    orchestrator: Orchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return orchestrator


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class AlertResponse(BaseModel):
    id: str
    kind: str
    severity: str
    message: str
    timestamp: float
    metadata: dict[str, Any] = {}
    resolved: bool = False


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    count: int


class ResolveResponse(BaseModel):
    alert_id: str
    resolved: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/health", summary="Component health")
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> JSONResponse:
    """Store connectivity and provider availability.

    Degraded still serves traffic (200); unhealthy returns 503.
    """
    result = await orchestrator.health()
    return JSONResponse(
        status_code=200 if result.is_serving else 503,
        content=result.to_dict(),
    )


@router.get("/metrics", summary="Metrics snapshot")
async def metrics(
    hours: int = Query(default=24, ge=1, le=168),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        return await orchestrator.metrics_snapshot(hours)
    except StoreError as exc:
        log.warning("api.metrics_unavailable", error=str(exc))
        raise HTTPException(status_code=503, detail="Metrics store unavailable") from exc


@router.get("/alerts", response_model=AlertListResponse, summary="Active alerts")
async def list_alerts(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AlertListResponse:
    alerts = await orchestrator.active_alerts()
    return AlertListResponse(
        alerts=[AlertResponse(**alert.to_dict()) for alert in alerts],
        count=len(alerts),
    )


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=ResolveResponse,
    summary="Resolve an alert",
)
async def resolve_alert(
    alert_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ResolveResponse:
    resolved = await orchestrator.resolve_alert(alert_id)
    if not resolved:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    log.info("api.alert_resolved", alert_id=alert_id)
    return ResolveResponse(alert_id=alert_id, resolved=True)
