"""Main FastAPI application."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from vestibular_stats.api import health, statistics
from vestibular_stats.config import Settings, settings
from vestibular_stats.core.cache import CacheEngine
from vestibular_stats.core.events import CompositeCacheListener, LoggingCacheListener
from vestibular_stats.core.statistics import StatisticsCacheService
from vestibular_stats.models import ErrorResponse
from vestibular_stats.storage.base import StatisticsProvider, StatisticsProviderError
from vestibular_stats.storage.memory import InMemoryStatisticsProvider, create_default_users
from vestibular_stats.utils.metrics import PrometheusCacheListener

logging.basicConfig(level=settings.log_level)
log = logging.getLogger(__name__)


def build_statistics_service(config: Settings, provider: StatisticsProvider) -> StatisticsCacheService:
    """Compose the cache engine and the statistics service from settings."""
    listener = CompositeCacheListener(LoggingCacheListener())
    cache = CacheEngine(
        default_ttl=config.cache_default_ttl,
        max_size=config.cache_max_size,
        cleanup_interval=config.cache_cleanup_interval,
        listener=listener,
        single_flight=config.cache_single_flight,
    )
    listener.add(PrometheusCacheListener(cache_size=lambda: len(cache)))

    return StatisticsCacheService(
        cache,
        provider,
        global_ttl=config.global_stats_ttl,
        ranking_ttl=config.ranking_stats_ttl,
        user_ttl=config.user_stats_ttl,
        top_performers_limit=config.top_performers_limit,
        university_ranking_limit=config.university_ranking_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan events (startup and shutdown)."""
    log.info("Starting up application...")

    provider = InMemoryStatisticsProvider()
    if settings.seed_default_users:
        await create_default_users(provider)
    log.info("Initialized In-Memory Statistics Provider")

    service = build_statistics_service(settings, provider)
    service.cache.start()
    log.info("Initialized Statistics Cache Service")

    if settings.warmup_on_startup:
        await service.warmup_cache(background=True, limit=settings.warmup_limit)
        log.info(f"Scheduled background cache warmup (limit={settings.warmup_limit})")

    app.state.provider = provider
    app.state.statistics_service = service

    log.info("Application startup complete")

    yield

    log.info("Shutting down application...")
    await service.close()
    await service.cache.close()
    await provider.close()
    log.info("Application shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Cached aggregate statistics for the vestibular preparation platform",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(statistics.router)

Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.exception_handler(StatisticsProviderError)
async def provider_exception_handler(request: Request, exc: StatisticsProviderError):
    """Data store failures surface as 503 instead of a fabricated aggregate."""
    log.error(f"Statistics provider failure on {request.url.path}: {exc}")
    error = ErrorResponse(
        error="STATISTICS_UNAVAILABLE",
        message="Statistics are temporarily unavailable",
        details=str(exc) if settings.log_level == "DEBUG" else None,
    )
    return JSONResponse(status_code=503, content=error.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    error = ErrorResponse(
        error="INTERNAL_ERROR",
        message="An internal error occurred",
        details=str(exc) if settings.log_level == "DEBUG" else None,
    )
    return JSONResponse(status_code=500, content=error.model_dump())
