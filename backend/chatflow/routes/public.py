# /chatflow/routes/public.py

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from datetime import datetime, timezone

from chatflow.config.settings import settings
from chatflow.utils.dependencies import verify_api_key

# Health probes and the Prometheus scrape endpoint. /metrics is protected
# by the API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Chatflow Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return PlainTextResponse("engine not started", status_code=503)
    if runtime.db is not None and not await runtime.db.health_check():
        return PlainTextResponse("database unavailable", status_code=503)
    return {"status": "ready"}


@router.get("/metrics", dependencies=[Depends(verify_api_key)])
async def metrics():
    return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
