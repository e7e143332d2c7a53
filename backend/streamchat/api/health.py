"""
Health check and metrics endpoints.

Provides liveness and readiness probes for monitoring.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from streamchat import __version__
from streamchat.config import get_settings
from streamchat.core.metrics import metrics
from streamchat.db import verify_database_connection

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/healthz")
async def healthcheck() -> dict[str, Any]:
    """
    Health check endpoint.

    Returns basic service health status. Used by load balancers,
    orchestrators, and monitoring systems.
    """
    settings = get_settings()

    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "debug": settings.debug,
    }


@router.get("/readyz")
async def readiness(request: Request) -> JSONResponse:
    """
    Readiness check endpoint.

    Ready when the database answers and the chat service is wired up.
    """
    checks: dict[str, bool] = {
        "database": verify_database_connection(),
        "chat_service": getattr(request.app.state, "chat_service", None) is not None,
    }

    all_ready = all(checks.values())
    payload: dict[str, Any] = {
        "status": "ready" if all_ready else "not_ready",
        "timestamp": datetime.now(UTC).isoformat(),
        "checks": checks,
    }

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=payload,
    )


@router.get("/metrics")
async def metrics_snapshot() -> dict[str, Any]:
    """In-process counters and gauges."""
    return metrics.snapshot()
