"""
Health check endpoints of the operator process.
Provides liveness and readiness probes.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from arango_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    Ready once the platform client is connected and the worker is running.
    """
    platform = getattr(request.app.state, "platform", None)
    worker = getattr(request.app.state, "worker", None)
    worker_running = bool(worker and worker.running)

    if platform is None or not worker_running:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "kubernetes": "connected" if platform is not None else "disconnected",
                "reconciler": "running" if worker_running else "stopped",
                "timestamp": _now(),
            },
        )

    return {
        "status": "ready",
        "kubernetes": "connected",
        "reconciler": "running",
        "timestamp": _now(),
    }
