"""Health & Readiness Probes — liveness and readiness endpoints for container orchestration.

Invariants:
    - GET <prefix>/health/ always returns 200 if process is up (liveness)
    - GET <prefix>/health/ready returns 503 if database is unreachable (readiness)

Design Decisions:
    - Plain FastAPI routes outside the pipeline: probes need no models,
      transactions or controllers
"""

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from keel.app import Application

logger = logging.getLogger(__name__)


def create_router(app: "Application") -> APIRouter:
    router = APIRouter(prefix=f"{app.settings.api_prefix}/health", tags=["health"])

    @router.get("/", status_code=status.HTTP_200_OK)
    async def health_check():
        """Basic liveness probe. Returns 200 if the process is up."""
        return {"status": "healthy", "service": "keel", "models": len(app.models)}

    @router.get("/ready")
    async def readiness_check():
        """Readiness probe, including database connectivity."""
        db_ok = await app.database.health_check() if app.database else False
        if not db_ok:
            logger.warning("Readiness check failed: database unavailable")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "not_ready",
                    "reason": "database_unavailable",
                },
            )
        return {"status": "ready", "checks": {"database": "healthy"}}

    return router
