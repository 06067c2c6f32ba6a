"""
Health check endpoints for the flowdeck server.

Provides /health (liveness) and /ready (readiness) endpoints.
"""

from fastapi import APIRouter, Response, status

from flowdeck.config import settings
from flowdeck.db.session import get_db_health
from flowdeck.logging_config import get_logger
from flowdeck.services.execution_poller import get_poller

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Liveness probe endpoint.

    Returns 200 if the API server is running.
    """
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict[str, str | dict[str, str]]:
    """Readiness probe endpoint.

    Checks the local database and, when sync is enabled, that the poller
    schedule is active.
    """
    checks: dict[str, str] = {}

    checks["database"] = "healthy" if await get_db_health() else "unhealthy"
    if settings.sync.enabled:
        checks["poller"] = "healthy" if get_poller().is_running else "unhealthy"

    all_healthy = all(v == "healthy" for v in checks.values())

    if not all_healthy:
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
