"""Tests for the statistics cache service and aggregate computations."""

import asyncio
import datetime
import logging

import pytest
from conftest import CountingProvider, make_user

from vestibular_stats.core.cache import CacheConfigError, CacheEngine
from vestibular_stats.core.statistics import (
    UNKNOWN_UNIVERSITY,
    StatisticsCacheService,
    compute_detailed_statistics,
    compute_global_statistics,
    compute_ranking_statistics,
)
from vestibular_stats.models import UserRecord, UserStatistics
from vestibular_stats.storage.base import StatisticsProviderError
from vestibular_stats.storage.memory import InMemoryStatisticsProvider

NOW = datetime.datetime(2025, 10, 9, 12, 0, tzinfo=datetime.timezone.utc)


def user_at(user_id, created_days_ago=60, level=None, experience=None, university=None, **stats):
    """Build a user record relative to NOW."""
    last_days = stats.pop("last_days", None)
    return UserRecord(
        id=user_id,
        name=f"User {user_id}",
        email=f"user{user_id}@teste.com",
        university=university,
        level=level,
        experience=experience,
        created_at=NOW - datetime.timedelta(days=created_days_ago),
        statistics=UserStatistics(
            last_simulation_date=NOW - datetime.timedelta(days=last_days) if last_days is not None else None,
            **stats,
        ),
    )


class FailingProvider(InMemoryStatisticsProvider):
    """Provider whose data store is unreachable."""

    async def get_all_users(self):
        raise StatisticsProviderError("database unreachable")

    async def get_user(self, user_id):
        raise StatisticsProviderError("database unreachable")


class TestComputeGlobalStatistics:
    """Tests for global aggregate computation."""

    def test_aggregates(self):
        """Test totals, average score and activity windows."""
        users = [
            user_at(
                "a", total_simulations=10, total_questions=400, correct_answers=300, time_spent=6000, last_days=2
            ),
            user_at(
                "b", total_simulations=5, total_questions=200, correct_answers=100, time_spent=3000, last_days=20
            ),
            UserRecord(id="c", name="No Stats", email="c@teste.com", created_at=NOW),
        ]

        stats = compute_global_statistics(users, NOW)

        assert stats.total_users == 3
        assert stats.total_simulations == 15
        assert stats.total_questions == 600
        assert stats.average_global_score == 66.67
        assert stats.total_study_time == 150
        assert stats.active_users_last_7_days == 1
        assert stats.active_users_last_30_days == 2
        assert stats.calculated_at == NOW

    def test_no_users(self):
        """Test aggregates over an empty platform."""
        stats = compute_global_statistics([], NOW)

        assert stats.total_users == 0
        assert stats.average_global_score == 0.0
        assert stats.active_users_last_30_days == 0


class TestComputeRankingStatistics:
    """Tests for leaderboard computation."""

    @pytest.fixture
    def users(self):
        return [
            user_at("u1", average_score=90.0, total_simulations=5, university="USP"),
            user_at("u2", average_score=90.05, total_simulations=12, university="USP"),
            user_at("u3", average_score=70.0, total_simulations=3),
            user_at("u4", average_score=95.0, total_simulations=0, university="UNICAMP"),
        ]

    def test_top_performers_order(self, users):
        """Test ordering by score with near-ties broken by simulation count."""
        ranking = compute_ranking_statistics(users, NOW)

        assert [entry.user_id for entry in ranking.top_performers] == ["u2", "u1", "u3"]
        assert [entry.position for entry in ranking.top_performers] == [1, 2, 3]
        assert ranking.top_performers[0].email == "useru2@teste.com"

    def test_users_without_simulations_excluded(self, users):
        """Test that users with no simulations are not ranked."""
        ranking = compute_ranking_statistics(users, NOW)

        assert "u4" not in [entry.user_id for entry in ranking.top_performers]
        assert ranking.university_rankings["UNICAMP"] == []

    def test_university_rankings(self, users):
        """Test per-university grouping and ordering."""
        ranking = compute_ranking_statistics(users, NOW)

        assert [entry.user_id for entry in ranking.university_rankings["USP"]] == ["u2", "u1"]
        assert [entry.user_id for entry in ranking.university_rankings[UNKNOWN_UNIVERSITY]] == ["u3"]

    def test_limits(self, users):
        """Test leaderboard and university ranking limits."""
        ranking = compute_ranking_statistics(users, NOW, top_limit=2, university_limit=1)

        assert len(ranking.top_performers) == 2
        assert [entry.user_id for entry in ranking.university_rankings["USP"]] == ["u2"]


class TestComputeDetailedStatistics:
    """Tests for per-user derived statistics."""

    def test_derived_metrics(self):
        """Test efficiency, trend, progress and recommendations."""
        user = user_at(
            "u1",
            created_days_ago=100,
            level=2,
            experience=500,
            total_simulations=20,
            total_questions=900,
            correct_answers=720,
            average_score=80.0,
            time_spent=36000,
            streak_days=15,
            last_days=3,
        )

        stats = compute_detailed_statistics(user, NOW)

        assert stats.user_id == "u1"
        assert stats.basic.total_simulations == 20
        assert stats.advanced.avg_questions_per_simulation == 45
        assert stats.advanced.avg_time_per_question == 40
        assert stats.advanced.efficiency_rate == 72.0
        assert stats.advanced.study_frequency == 1.4
        assert stats.advanced.performance_trend == "good"
        assert stats.advanced.days_since_joined == 100
        assert stats.advanced.active_in_last_7_days is True
        assert stats.advanced.active_in_last_30_days is True
        assert stats.progress.current_level == 2
        assert stats.progress.experience == 500
        assert stats.progress.xp_to_next_level == 300
        assert stats.progress.completion_rate == 80.0
        assert stats.progress.study_consistency == 50.0
        assert stats.recommendations.suggested_study_time == "Mantenha o ritmo atual"
        assert stats.recommendations.focus_areas == ["Manter consistência", "Focar em questões avançadas"]
        assert stats.recommendations.next_goal == "Mantenha a excelência!"

    def test_user_without_statistics(self):
        """Test a brand new user with no recorded activity."""
        user = UserRecord(id="new", name="New", email="new@teste.com", created_at=NOW)

        stats = compute_detailed_statistics(user, NOW)

        assert stats.advanced.avg_questions_per_simulation == 0
        assert stats.advanced.efficiency_rate == 0.0
        assert stats.advanced.study_frequency == 0.0
        assert stats.advanced.performance_trend == "needs_improvement"
        assert stats.advanced.active_in_last_30_days is False
        assert stats.progress.current_level == 1
        assert stats.progress.xp_to_next_level == 200
        assert stats.progress.study_consistency == 0.0
        assert stats.recommendations.next_goal == "Complete 10 simulados"
        assert stats.recommendations.focus_areas == ["Revisar conceitos básicos", "Fazer mais simulados"]

    @pytest.mark.parametrize(
        "score,trend",
        [(85.0, "excellent"), (70.0, "good"), (50.0, "average"), (49.9, "needs_improvement")],
    )
    def test_performance_trend_thresholds(self, score, trend):
        """Test performance trend boundaries."""
        user = user_at("u", average_score=score)
        assert compute_detailed_statistics(user, NOW).advanced.performance_trend == trend

    def test_consistency_is_capped(self):
        """Test that study consistency never exceeds 100."""
        user = user_at("u", streak_days=45)
        assert compute_detailed_statistics(user, NOW).progress.study_consistency == 100.0

    def test_days_since_joined_floors_partial_days(self):
        """Test that partial days round toward negative infinity."""
        user = user_at("u", created_days_ago=2.5)
        assert compute_detailed_statistics(user, NOW).advanced.days_since_joined == 2

        future = user_at("f", created_days_ago=-1 / 24, total_simulations=4)
        stats = compute_detailed_statistics(future, NOW)
        assert stats.advanced.days_since_joined == -1
        assert stats.advanced.study_frequency == 0.0


class TestStatisticsCacheServiceConfig:
    """Tests for service construction."""

    @pytest.mark.parametrize("ttl_name", ["global_ttl", "ranking_ttl", "user_ttl"])
    def test_invalid_ttl_rejected(self, provider, ttl_name):
        """Test that non-positive TTLs are rejected."""
        with pytest.raises(CacheConfigError):
            StatisticsCacheService(CacheEngine(), provider, **{ttl_name: 0})

    def test_user_key_namespace(self):
        """Test per-user key layout."""
        assert StatisticsCacheService.user_key("42") == "stats:user:42"


@pytest.mark.asyncio
class TestStatisticsCacheService:
    """Tests for the statistics cache service."""

    async def test_global_statistics_cached(self, statistics_service, provider):
        """Test that global statistics are computed once and then served from cache."""
        first = await statistics_service.get_global_statistics()
        second = await statistics_service.get_global_statistics()

        assert first.total_users == 3
        assert second == first
        assert provider.all_users_calls == 1

    async def test_ranking_statistics_cached(self, statistics_service, provider):
        """Test that the ranking is computed once and then served from cache."""
        ranking = await statistics_service.get_ranking_statistics()
        await statistics_service.get_ranking_statistics()

        assert [entry.user_id for entry in ranking.top_performers] == ["2", "1", "3"]
        assert provider.all_users_calls == 1

    async def test_user_statistics_cached(self, statistics_service, provider):
        """Test that detailed user statistics are cached per user."""
        stats = await statistics_service.get_user_detailed_statistics("1")
        await statistics_service.get_user_detailed_statistics("1")

        assert stats is not None
        assert stats.user_id == "1"
        assert provider.user_calls == 1
        assert statistics_service.cache.has("stats:user:1")

    async def test_missing_user_returns_none_and_is_not_cached(self, statistics_service, provider):
        """Test that an unknown user yields None without a cache entry."""
        assert await statistics_service.get_user_detailed_statistics("ghost") is None
        assert statistics_service.cache.has("stats:user:ghost") is False

        await provider.add_user(make_user("ghost", average_score=60.0, total_simulations=1))
        stats = await statistics_service.get_user_detailed_statistics("ghost")

        assert stats is not None
        assert stats.user_id == "ghost"

    async def test_ttl_ordering(self, statistics_service, clock):
        """Test that user stats expire first while global and ranking stay cached."""
        await statistics_service.get_global_statistics()
        await statistics_service.get_ranking_statistics()
        await statistics_service.get_user_detailed_statistics("1")

        clock.advance(150)

        cache = statistics_service.cache
        assert cache.get(StatisticsCacheService.user_key("1")) is None
        assert cache.get(StatisticsCacheService.GLOBAL_KEY) is not None
        assert cache.get(StatisticsCacheService.RANKING_KEY) is not None

        clock.advance(500)
        assert cache.get(StatisticsCacheService.RANKING_KEY) is None
        assert cache.get(StatisticsCacheService.GLOBAL_KEY) is not None

    async def test_expired_statistics_are_recomputed(self, statistics_service, provider, clock):
        """Test that an expired aggregate is recomputed on the next request."""
        await statistics_service.get_user_detailed_statistics("1")
        clock.advance(121)
        await statistics_service.get_user_detailed_statistics("1")

        assert provider.user_calls == 2

    async def test_invalidate_user_cache_is_selective(self, statistics_service):
        """Test that invalidating one user leaves other entries alone."""
        await statistics_service.get_user_detailed_statistics("1")
        await statistics_service.get_user_detailed_statistics("2")
        await statistics_service.get_ranking_statistics()
        await statistics_service.get_global_statistics()

        assert statistics_service.invalidate_user_cache("1") is True

        cache = statistics_service.cache
        assert cache.has(StatisticsCacheService.user_key("1")) is False
        assert cache.has(StatisticsCacheService.user_key("2")) is True
        assert cache.has(StatisticsCacheService.RANKING_KEY) is True
        assert cache.has(StatisticsCacheService.GLOBAL_KEY) is True

    async def test_invalidate_user_cache_when_absent(self, statistics_service):
        """Test invalidating a user with nothing cached."""
        assert statistics_service.invalidate_user_cache("1") is False

    async def test_invalidate_all_cache_scoped_to_namespace(self, statistics_service):
        """Test that invalidating all only touches statistics keys."""
        await statistics_service.get_global_statistics()
        await statistics_service.get_ranking_statistics()
        await statistics_service.get_user_detailed_statistics("1")
        statistics_service.cache.set("session:abc", "unrelated")

        removed = statistics_service.invalidate_all_cache()

        assert removed == 3
        assert statistics_service.cache.keys() == ["session:abc"]

    async def test_cache_metrics_passthrough(self, statistics_service):
        """Test that metrics come from the underlying engine."""
        await statistics_service.get_global_statistics()
        await statistics_service.get_global_statistics()

        metrics = statistics_service.get_cache_metrics()

        assert metrics == statistics_service.cache.get_metrics()
        assert metrics.hits == 1
        assert metrics.misses == 1
        assert metrics.entries == 1

    async def test_provider_failure_propagates(self, clock):
        """Test that data store errors surface instead of default aggregates."""
        cache = CacheEngine(clock=clock)
        service = StatisticsCacheService(cache, FailingProvider())

        with pytest.raises(StatisticsProviderError):
            await service.get_global_statistics()
        with pytest.raises(StatisticsProviderError):
            await service.get_ranking_statistics()
        with pytest.raises(StatisticsProviderError):
            await service.get_user_detailed_statistics("1")

        assert len(cache) == 0


@pytest.mark.asyncio
class TestWarmup:
    """Tests for cache warmup."""

    async def test_foreground_warmup(self, statistics_service):
        """Test that warmup loads global, ranking and top users' statistics."""
        result = await statistics_service.warmup_cache(limit=2)

        assert result is None
        assert sorted(statistics_service.cache.keys()) == [
            "stats:global",
            "stats:ranking",
            "stats:user:1",
            "stats:user:2",
        ]

    async def test_warmup_limit_selects_best_users(self, statistics_service):
        """Test that only the highest scoring users are warmed up."""
        await statistics_service.warmup_cache(limit=1)

        user_keys = [key for key in statistics_service.cache.keys() if key.startswith("stats:user:")]
        assert user_keys == ["stats:user:2"]

    async def test_warmup_serves_following_requests(self, statistics_service, provider):
        """Test that requests after warmup hit the cache."""
        await statistics_service.warmup_cache(limit=0)
        calls = provider.all_users_calls

        await statistics_service.get_global_statistics()
        await statistics_service.get_ranking_statistics()

        assert provider.all_users_calls == calls

    async def test_background_warmup(self, statistics_service):
        """Test that background warmup returns a task that fills the cache."""
        task = await statistics_service.warmup_cache(background=True, limit=3)

        assert isinstance(task, asyncio.Task)
        await task

        assert len(statistics_service.cache) == 5

    async def test_background_warmup_failure_is_logged(self, clock, caplog):
        """Test that a failing background warmup logs instead of raising."""
        service = StatisticsCacheService(CacheEngine(clock=clock), FailingProvider())

        with caplog.at_level(logging.ERROR, logger="vestibular_stats.core.statistics"):
            task = await service.warmup_cache(background=True)
            await asyncio.wait([task])

        assert "Background statistics cache warmup failed" in caplog.text

    async def test_foreground_warmup_failure_propagates(self, clock):
        """Test that a foreground warmup surfaces data store errors."""
        service = StatisticsCacheService(CacheEngine(clock=clock), FailingProvider())

        with pytest.raises(StatisticsProviderError):
            await service.warmup_cache()

    async def test_negative_limit_rejected(self, statistics_service):
        """Test that a negative limit is rejected."""
        with pytest.raises(ValueError):
            await statistics_service.warmup_cache(limit=-1)

    async def test_close_cancels_background_warmup(self, clock, sample_users):
        """Test that closing the service cancels a pending warmup."""
        release = asyncio.Event()

        class SlowProvider(CountingProvider):
            async def get_all_users(self):
                await release.wait()
                return await super().get_all_users()

        service = StatisticsCacheService(CacheEngine(clock=clock), SlowProvider(sample_users))
        task = await service.warmup_cache(background=True)
        await asyncio.sleep(0)

        await service.close()

        assert task.cancelled()
        assert len(service.cache) == 0
