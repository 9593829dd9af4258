# /chatflow/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException

from chatflow.config.settings import settings
from chatflow.workflows.scheduler import ExecutionScheduler

log = structlog.get_logger(__name__)


def get_engine(request: Request) -> ExecutionScheduler:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Flow engine is not ready")
    return engine


async def verify_api_key(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            log.warning("Rejected request with invalid API key.", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
