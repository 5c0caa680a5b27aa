"""Health check endpoints for load balancer and monitoring."""

from fastapi import APIRouter
from pydantic import BaseModel

from siteaudit.api.deps import Handles
from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import StorageError

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    checks: dict[str, str]


@router.get("", response_model=HealthResponse, include_in_schema=False)
def health_check(handles: Handles) -> HealthResponse:
    settings = get_settings()

    checks: dict[str, str] = {}
    for name, store in (("audits_db", handles.audits), ("link_cache", handles.link_cache)):
        try:
            store.ping()
            checks[name] = "healthy"
        except StorageError as e:
            checks[name] = f"unhealthy: {str(e)}"

    overall = "healthy" if all("unhealthy" not in v for v in checks.values()) else "degraded"

    return HealthResponse(
        status=overall,
        version=settings.APP_VERSION,
        checks=checks,
    )


@router.get("/ready", include_in_schema=False)
def readiness(handles: Handles) -> dict:
    """Readiness check: the audits database answers."""
    try:
        handles.audits.ping()
    except StorageError:
        return {"ready": False}
    return {"ready": True}


@router.get("/live", include_in_schema=False)
async def liveness() -> dict:
    """Liveness check."""
    return {"alive": True}
