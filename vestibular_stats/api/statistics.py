"""Statistics endpoints backed by the statistics cache service."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from vestibular_stats.core.statistics import StatisticsCacheService
from vestibular_stats.models import (
    CacheMetricsResponse,
    DetailedUserStatistics,
    GlobalStatistics,
    OperationResponse,
    RankingStatistics,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/statistics", tags=["statistics"])


def get_statistics_service(request: Request) -> StatisticsCacheService:
    """Return the statistics service composed at startup."""
    service = getattr(request.app.state, "statistics_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Statistics service not initialized",
        )
    return service


@router.get("/global", response_model=GlobalStatistics)
async def get_global_statistics(
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> GlobalStatistics:
    """Platform-wide statistics."""
    return await service.get_global_statistics()


@router.get("/ranking", response_model=RankingStatistics)
async def get_ranking_statistics(
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> RankingStatistics:
    """Leaderboard and per-university rankings."""
    return await service.get_ranking_statistics()


@router.get("/users/{user_id}", response_model=DetailedUserStatistics)
async def get_user_statistics(
    user_id: str,
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> DetailedUserStatistics:
    """Detailed statistics for one user."""
    stats = await service.get_user_detailed_statistics(user_id)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User '{user_id}' not found",
        )
    return stats


@router.delete("/users/{user_id}/cache", response_model=OperationResponse)
async def invalidate_user_statistics(
    user_id: str,
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> OperationResponse:
    """Drop a user's cached detailed statistics, e.g. after a finished simulation."""
    removed = service.invalidate_user_cache(user_id)
    return OperationResponse(
        message=f"Statistics cache invalidated for user {user_id}",
        details={"removed": removed},
    )


@router.get("/cache/metrics", response_model=CacheMetricsResponse)
async def get_cache_metrics(
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> CacheMetricsResponse:
    """Cache engine counters."""
    metrics = service.get_cache_metrics()
    return CacheMetricsResponse(
        **metrics.model_dump(),
        hit_rate_formatted=f"{metrics.hit_rate:.2f}%",
        memory_usage_formatted=f"{metrics.memory_usage / 1024:.2f} KB",
    )


@router.post("/cache/warmup", response_model=OperationResponse)
async def warmup_cache(
    limit: int = Query(default=5, ge=0, le=100, description="Number of top users to warm up"),
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> OperationResponse:
    """Populate the statistics cache synchronously."""
    logger.info(f"Cache warmup requested (limit={limit})")
    await service.warmup_cache(limit=limit)
    return OperationResponse(
        message="Statistics cache warmed up",
        details={"entries": service.get_cache_metrics().entries},
    )


@router.delete("/cache", response_model=OperationResponse)
async def invalidate_all_statistics(
    service: StatisticsCacheService = Depends(get_statistics_service),
) -> OperationResponse:
    """Drop every cached statistics entry."""
    removed = service.invalidate_all_cache()
    return OperationResponse(message="Statistics cache invalidated", details={"removed": removed})
