"""Shared test fixtures and utilities."""

import datetime

import pytest
from fastapi.testclient import TestClient

from vestibular_stats.core.cache import CacheEngine
from vestibular_stats.core.events import CacheListener
from vestibular_stats.core.statistics import StatisticsCacheService
from vestibular_stats.main import app
from vestibular_stats.models import UserRecord, UserStatistics
from vestibular_stats.storage.memory import InMemoryStatisticsProvider


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingListener(CacheListener):
    """Cache listener that records every event it receives."""

    def __init__(self):
        self.events: list[tuple] = []

    def on_hit(self, key):
        self.events.append(("hit", key))

    def on_miss(self, key):
        self.events.append(("miss", key))

    def on_set(self, key, ttl):
        self.events.append(("set", key, ttl))

    def on_evicted(self, key, reason):
        self.events.append(("evicted", key, reason))

    def on_cleared(self, count):
        self.events.append(("cleared", count))

    def of_type(self, event_type: str) -> list[tuple]:
        return [event for event in self.events if event[0] == event_type]


class CountingProvider(InMemoryStatisticsProvider):
    """In-memory provider that counts queries."""

    def __init__(self, users=None):
        super().__init__(users)
        self.all_users_calls = 0
        self.user_calls = 0

    async def get_all_users(self):
        self.all_users_calls += 1
        return await super().get_all_users()

    async def get_user(self, user_id):
        self.user_calls += 1
        return await super().get_user(user_id)


def make_user(
    user_id: str,
    average_score: float = 0.0,
    total_simulations: int = 0,
    university=None,
    days_since_last_simulation=None,
    **stats,
) -> UserRecord:
    """Build a user record with statistics relative to the current time."""
    now = datetime.datetime.now(datetime.timezone.utc)
    last_simulation = (
        now - datetime.timedelta(days=days_since_last_simulation) if days_since_last_simulation is not None else None
    )
    return UserRecord(
        id=user_id,
        name=f"User {user_id}",
        email=f"user{user_id}@teste.com",
        university=university,
        created_at=now - datetime.timedelta(days=60),
        statistics=UserStatistics(
            total_simulations=total_simulations,
            average_score=average_score,
            last_simulation_date=last_simulation,
            **stats,
        ),
    )


@pytest.fixture
def clock():
    """Create a fake clock starting at a fixed point."""
    return FakeClock()


@pytest.fixture
def listener():
    """Create a recording cache listener."""
    return RecordingListener()


@pytest.fixture
def cache(clock, listener):
    """Create a fresh cache engine driven by the fake clock."""
    return CacheEngine(default_ttl=60, max_size=100, cleanup_interval=30, listener=listener, clock=clock)


@pytest.fixture
def sample_users():
    """A small population of users with varied statistics."""
    return [
        make_user(
            "1",
            average_score=75.0,
            total_simulations=12,
            university="USP",
            days_since_last_simulation=2,
            total_questions=500,
            correct_answers=375,
            time_spent=18000,
            streak_days=4,
        ),
        make_user(
            "2",
            average_score=88.0,
            total_simulations=20,
            university="UNICAMP",
            days_since_last_simulation=10,
            total_questions=900,
            correct_answers=792,
            time_spent=36000,
            streak_days=12,
        ),
        make_user("3", average_score=55.0, total_simulations=3, university="USP", days_since_last_simulation=40),
    ]


@pytest.fixture
def provider(sample_users):
    """Create a counting provider seeded with the sample users."""
    return CountingProvider(sample_users)


@pytest.fixture
def statistics_service(clock, provider):
    """Create a statistics service over a fresh cache."""
    cache = CacheEngine(default_ttl=300, max_size=100, cleanup_interval=60, clock=clock)
    return StatisticsCacheService(cache, provider, global_ttl=3600, ranking_ttl=600, user_ttl=120)


@pytest.fixture
def test_client(provider, statistics_service):
    """Create a test client with the statistics service in app state."""
    app.state.provider = provider
    app.state.statistics_service = statistics_service
    return TestClient(app)
