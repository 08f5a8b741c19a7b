"""Statistics cache service.

Computes the platform's expensive aggregates (global stats, rankings and
per-user detailed stats) from a statistics provider and serves them through
the cache engine, each kind under its own key and TTL.
"""

import asyncio
import datetime
import functools
import logging
import math
import time
from collections import defaultdict
from typing import Optional

from vestibular_stats.core.cache import CacheConfigError, CacheEngine
from vestibular_stats.models import (
    AdvancedStats,
    CacheMetrics,
    DetailedUserStatistics,
    GlobalStatistics,
    ProgressStats,
    RankingEntry,
    RankingStatistics,
    Recommendations,
    UniversityRankingEntry,
    UserRecord,
    UserStatistics,
)
from vestibular_stats.storage.base import StatisticsProvider
from vestibular_stats.utils.metrics import stats_recompute_seconds

logger = logging.getLogger(__name__)

UNKNOWN_UNIVERSITY = "Não informada"
SECONDS_PER_DAY = 24 * 60 * 60
XP_PER_LEVEL = 200
SCORE_TIE_TOLERANCE = 0.1


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def _days_since(value: datetime.datetime, now: datetime.datetime) -> float:
    return (now - _as_utc(value)).total_seconds() / SECONDS_PER_DAY


def compute_global_statistics(users: list[UserRecord], now: datetime.datetime) -> GlobalStatistics:
    """Aggregate platform-wide statistics over all users."""
    total_simulations = 0
    total_questions = 0
    total_correct = 0
    total_time = 0
    active_7_days = 0
    active_30_days = 0

    for user in users:
        stats = user.statistics or UserStatistics()
        total_simulations += stats.total_simulations
        total_questions += stats.total_questions
        total_correct += stats.correct_answers
        total_time += stats.time_spent

        if stats.last_simulation_date is not None:
            days = _days_since(stats.last_simulation_date, now)
            if days <= 7:
                active_7_days += 1
            if days <= 30:
                active_30_days += 1

    average_score = (total_correct / total_questions) * 100 if total_questions > 0 else 0.0

    return GlobalStatistics(
        total_users=len(users),
        total_simulations=total_simulations,
        total_questions=total_questions,
        average_global_score=round(average_score, 2),
        total_study_time=round(total_time / 60),
        active_users_last_7_days=active_7_days,
        active_users_last_30_days=active_30_days,
        calculated_at=now,
    )


def _compare_performers(a: UserRecord, b: UserRecord) -> int:
    # Near-equal scores are ordered by number of simulations
    a_stats, b_stats = a.statistics or UserStatistics(), b.statistics or UserStatistics()
    if abs(a_stats.average_score - b_stats.average_score) < SCORE_TIE_TOLERANCE:
        return b_stats.total_simulations - a_stats.total_simulations
    return -1 if a_stats.average_score > b_stats.average_score else 1


def _has_simulations(user: UserRecord) -> bool:
    return user.statistics is not None and user.statistics.total_simulations > 0


def compute_ranking_statistics(
    users: list[UserRecord],
    now: datetime.datetime,
    top_limit: int = 10,
    university_limit: int = 5,
) -> RankingStatistics:
    """Build the leaderboard and the per-university sub-rankings.

    Only users with at least one simulation are ranked.
    """
    ranked = sorted(filter(_has_simulations, users), key=functools.cmp_to_key(_compare_performers))
    top_performers = [
        RankingEntry(
            user_id=user.id,
            name=user.name,
            email=user.email,
            average_score=user.statistics.average_score,
            total_simulations=user.statistics.total_simulations,
            position=position,
        )
        for position, user in enumerate(ranked[:top_limit], start=1)
    ]

    by_university: dict[str, list[UserRecord]] = defaultdict(list)
    for user in users:
        by_university[user.university or UNKNOWN_UNIVERSITY].append(user)

    university_rankings = {}
    for university, members in by_university.items():
        members = sorted(
            filter(_has_simulations, members),
            key=lambda user: user.statistics.average_score,
            reverse=True,
        )
        university_rankings[university] = [
            UniversityRankingEntry(
                user_id=user.id,
                name=user.name,
                average_score=user.statistics.average_score,
                total_simulations=user.statistics.total_simulations,
            )
            for user in members[:university_limit]
        ]

    return RankingStatistics(
        top_performers=top_performers,
        university_rankings=university_rankings,
        calculated_at=now,
    )


def _performance_trend(average_score: float) -> str:
    if average_score >= 85:
        return "excellent"
    if average_score >= 70:
        return "good"
    if average_score >= 50:
        return "average"
    return "needs_improvement"


def _recommendations(stats: UserStatistics) -> Recommendations:
    if stats.average_score < 70:
        suggested_study_time = "Aumente o tempo de estudo"
    elif stats.average_score < 85:
        suggested_study_time = "Mantenha o ritmo atual"
    else:
        suggested_study_time = "Excelente performance!"

    if stats.average_score < 60:
        focus_areas = ["Revisar conceitos básicos", "Fazer mais simulados"]
    elif stats.average_score < 80:
        focus_areas = ["Praticar questões específicas", "Revisar erros"]
    else:
        focus_areas = ["Manter consistência", "Focar em questões avançadas"]

    if stats.total_simulations < 10:
        next_goal = "Complete 10 simulados"
    elif stats.average_score < 70:
        next_goal = "Alcance 70% de aproveitamento"
    elif stats.streak_days < 7:
        next_goal = "Mantenha 7 dias consecutivos"
    else:
        next_goal = "Mantenha a excelência!"

    return Recommendations(
        suggested_study_time=suggested_study_time,
        focus_areas=focus_areas,
        next_goal=next_goal,
    )


def compute_detailed_statistics(user: UserRecord, now: datetime.datetime) -> DetailedUserStatistics:
    """Derive efficiency, trend, progress and recommendations for one user."""
    stats = user.statistics or UserStatistics()
    days_since_joined = math.floor(_days_since(user.created_at, now))

    avg_questions = round(stats.total_questions / stats.total_simulations) if stats.total_simulations > 0 else 0
    avg_time = round(stats.time_spent / stats.total_questions) if stats.total_questions > 0 else 0
    efficiency = round(stats.correct_answers / (stats.time_spent / 3600), 2) if stats.time_spent > 0 else 0.0
    if stats.total_simulations > 0 and days_since_joined > 0:
        frequency = round(stats.total_simulations / days_since_joined * 7, 1)
    else:
        frequency = 0.0

    if stats.last_simulation_date is not None:
        days_inactive = _days_since(stats.last_simulation_date, now)
        active_7_days, active_30_days = days_inactive <= 7, days_inactive <= 30
    else:
        active_7_days = active_30_days = False

    level = user.level or 1
    experience = user.experience or 0
    level_xp = level * XP_PER_LEVEL

    return DetailedUserStatistics(
        user_id=user.id,
        basic=stats,
        advanced=AdvancedStats(
            avg_questions_per_simulation=avg_questions,
            avg_time_per_question=avg_time,
            efficiency_rate=efficiency,
            study_frequency=frequency,
            performance_trend=_performance_trend(stats.average_score),
            days_since_joined=days_since_joined,
            active_in_last_7_days=active_7_days,
            active_in_last_30_days=active_30_days,
        ),
        progress=ProgressStats(
            current_level=level,
            experience=experience,
            xp_to_next_level=level_xp - experience % level_xp,
            completion_rate=(
                round(stats.correct_answers / stats.total_questions * 100, 1) if stats.total_questions > 0 else 0.0
            ),
            study_consistency=min(100.0, stats.streak_days / 30 * 100) if stats.streak_days > 0 else 0.0,
        ),
        recommendations=_recommendations(stats),
        calculated_at=now,
    )


class StatisticsCacheService:
    """Serves aggregate statistics through the cache engine.

    Each aggregate kind has its own key and TTL: global stats change slowly
    and live longest, the ranking sits in between, and per-user stats expire
    quickly so users see their own progress promptly. All keys share the
    ``stats:`` namespace so the service can invalidate only what it owns.

    Errors raised by the provider propagate unchanged; no default aggregate
    is ever substituted.
    """

    KEY_PREFIX = "stats:"
    GLOBAL_KEY = "stats:global"
    RANKING_KEY = "stats:ranking"
    USER_KEY_PREFIX = "stats:user:"

    def __init__(
        self,
        cache: CacheEngine,
        provider: StatisticsProvider,
        global_ttl: float = 3600,
        ranking_ttl: float = 600,
        user_ttl: float = 120,
        top_performers_limit: int = 10,
        university_ranking_limit: int = 5,
    ):
        """Initialize the statistics cache service.

        Args:
            cache: Cache engine holding the aggregates
            provider: Data source the aggregates are computed from
            global_ttl: TTL in seconds for global statistics
            ranking_ttl: TTL in seconds for the ranking
            user_ttl: TTL in seconds for per-user detailed statistics
            top_performers_limit: Number of entries in the global leaderboard
            university_ranking_limit: Number of entries per university ranking
        """
        for name, ttl in (("global_ttl", global_ttl), ("ranking_ttl", ranking_ttl), ("user_ttl", user_ttl)):
            if ttl <= 0:
                raise CacheConfigError(f"{name} must be positive, got {ttl}")

        self.cache = cache
        self.provider = provider
        self.global_ttl = global_ttl
        self.ranking_ttl = ranking_ttl
        self.user_ttl = user_ttl
        self.top_performers_limit = top_performers_limit
        self.university_ranking_limit = university_ranking_limit
        self._warmup_tasks: set[asyncio.Task] = set()

    @classmethod
    def user_key(cls, user_id: str) -> str:
        return f"{cls.USER_KEY_PREFIX}{user_id}"

    async def get_global_statistics(self) -> GlobalStatistics:
        """Return platform-wide statistics."""
        return await self.cache.get_or_set(self.GLOBAL_KEY, self._compute_global, self.global_ttl)

    async def get_ranking_statistics(self) -> RankingStatistics:
        """Return the leaderboard and per-university rankings."""
        return await self.cache.get_or_set(self.RANKING_KEY, self._compute_ranking, self.ranking_ttl)

    async def get_user_detailed_statistics(self, user_id: str) -> Optional[DetailedUserStatistics]:
        """Return detailed statistics for a user, or None if the user does not exist."""

        async def factory() -> Optional[DetailedUserStatistics]:
            return await self._compute_user(user_id)

        return await self.cache.get_or_set(self.user_key(user_id), factory, self.user_ttl)

    def invalidate_user_cache(self, user_id: str) -> bool:
        """Drop a user's detailed statistics.

        Global and ranking entries are left to expire on their own.

        Returns:
            True if a cached entry was removed
        """
        removed = self.cache.delete(self.user_key(user_id))
        logger.info(f"Invalidated statistics cache for user {user_id}")
        return removed

    def invalidate_all_cache(self) -> int:
        """Drop every entry in the statistics namespace.

        Returns:
            Number of entries removed
        """
        removed = self.cache.invalidate_pattern(f"^{self.KEY_PREFIX}")
        logger.info(f"Invalidated all statistics cache entries ({removed} removed)")
        return removed

    def get_cache_metrics(self) -> CacheMetrics:
        """Return the underlying cache engine metrics."""
        return self.cache.get_metrics()

    async def warmup_cache(self, background: bool = False, limit: int = 5) -> Optional[asyncio.Task]:
        """Pre-populate global stats, the ranking and the top users' detailed stats.

        Args:
            background: Schedule the warmup as a task instead of awaiting it
            limit: Number of top users whose detailed statistics are loaded

        Returns:
            The scheduled task when ``background`` is True, otherwise None
        """
        if limit < 0:
            raise ValueError(f"limit must not be negative, got {limit}")

        if not background:
            await self._warmup(limit)
            return None

        task = asyncio.create_task(self._warmup(limit))
        self._warmup_tasks.add(task)
        task.add_done_callback(self._on_warmup_done)
        return task

    async def close(self) -> None:
        """Cancel any background warmup still running."""
        tasks = list(self._warmup_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _warmup(self, limit: int) -> None:
        logger.info("Starting statistics cache warmup...")
        start = time.perf_counter()

        await asyncio.gather(self.get_global_statistics(), self.get_ranking_statistics())

        users = await self.provider.get_all_users()
        top_users = sorted(
            users,
            key=lambda user: user.statistics.average_score if user.statistics else 0.0,
            reverse=True,
        )[:limit]
        await asyncio.gather(*(self.get_user_detailed_statistics(user.id) for user in top_users))

        logger.info(
            f"Statistics cache warmup complete ({len(top_users)} users) in {time.perf_counter() - start:.3f}s"
        )

    def _on_warmup_done(self, task: asyncio.Task) -> None:
        self._warmup_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background statistics cache warmup failed", exc_info=exc)

    async def _compute_global(self) -> GlobalStatistics:
        logger.info("Computing global statistics...")
        with stats_recompute_seconds.labels(kind="global").time():
            users = await self.provider.get_all_users()
            stats = compute_global_statistics(users, datetime.datetime.now(datetime.timezone.utc))
        logger.info(f"Computed global statistics for {stats.total_users} users")
        return stats

    async def _compute_ranking(self) -> RankingStatistics:
        logger.info("Computing ranking statistics...")
        with stats_recompute_seconds.labels(kind="ranking").time():
            users = await self.provider.get_all_users()
            ranking = compute_ranking_statistics(
                users,
                datetime.datetime.now(datetime.timezone.utc),
                top_limit=self.top_performers_limit,
                university_limit=self.university_ranking_limit,
            )
        logger.info(
            f"Computed ranking statistics ({len(ranking.top_performers)} top performers, "
            f"{len(ranking.university_rankings)} universities)"
        )
        return ranking

    async def _compute_user(self, user_id: str) -> Optional[DetailedUserStatistics]:
        with stats_recompute_seconds.labels(kind="user").time():
            user = await self.provider.get_user(user_id)
            if user is None:
                logger.info(f"User {user_id} not found, no detailed statistics")
                return None
            stats = compute_detailed_statistics(user, datetime.datetime.now(datetime.timezone.utc))
        logger.debug(f"Computed detailed statistics for user {user_id}")
        return stats
