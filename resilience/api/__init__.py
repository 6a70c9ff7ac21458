"""HTTP front door: health, metrics and alert endpoints."""

from resilience.api.app import create_app
from resilience.api.routes import get_orchestrator, router

__all__ = [
    "create_app",
    "get_orchestrator",
    "router",
]
