"""Health and readiness check endpoints."""

import datetime

from fastapi import APIRouter, Request

from vestibular_stats.models import HealthResponse, ReadinessResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy", timestamp=datetime.datetime.now(datetime.timezone.utc))


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness check with dependency status."""
    checks = {}

    provider = getattr(request.app.state, "provider", None)
    if provider is not None:
        try:
            result = await provider.health_check()
            checks["provider"] = "ok" if result.get("status") == "healthy" else "unhealthy"
        except Exception as e:
            checks["provider"] = f"error: {str(e)}"
    else:
        checks["provider"] = "not_initialized"

    checks["statistics_cache"] = "ok" if getattr(request.app.state, "statistics_service", None) else "not_initialized"

    ready = all(status == "ok" for status in checks.values())

    return ReadinessResponse(ready=ready, checks=checks)
