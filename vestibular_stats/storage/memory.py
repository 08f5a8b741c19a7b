"""In-memory statistics provider for development and testing."""

import asyncio
import datetime
import logging
from typing import Optional

from vestibular_stats.models import UserRecord, UserStatistics
from vestibular_stats.storage.base import StatisticsProvider

logger = logging.getLogger(__name__)


class InMemoryStatisticsProvider(StatisticsProvider):
    """In-memory provider holding user records in a dict."""

    def __init__(self, users: Optional[list[UserRecord]] = None):
        """Initialize memory provider.

        Args:
            users: Optional initial user records
        """
        self._users: dict[str, UserRecord] = {user.id: user for user in users or []}
        self._lock = asyncio.Lock()

    async def add_user(self, user: UserRecord) -> UserRecord:
        """Add a new user record."""
        async with self._lock:
            if user.id in self._users:
                raise ValueError(f"User '{user.id}' already exists")
            self._users[user.id] = user
        return user

    async def update_user(self, user: UserRecord) -> UserRecord:
        """Replace an existing user record."""
        async with self._lock:
            if user.id not in self._users:
                raise ValueError(f"User '{user.id}' not found")
            self._users[user.id] = user
        return user

    async def get_all_users(self) -> list[UserRecord]:
        """Return a copy of all user records."""
        async with self._lock:
            return [user.model_copy(deep=True) for user in self._users.values()]

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Return a copy of one user record, or None."""
        async with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def health_check(self) -> dict:
        """Check if storage is healthy."""
        return {"status": "healthy", "users": len(self._users)}

    async def close(self) -> None:
        """Close storage (no-op for memory storage)."""
        pass

    async def clear(self) -> None:
        """Remove all users (for testing)."""
        async with self._lock:
            self._users.clear()


async def create_default_users(provider: InMemoryStatisticsProvider) -> None:
    """Create default users for development.

    Args:
        provider: In-memory statistics provider
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    default_users = [
        UserRecord(
            id="1",
            name="João Silva",
            email="joao@teste.com",
            university="USP",
            level=3,
            experience=450,
            statistics=UserStatistics(
                total_simulations=12,
                total_questions=540,
                correct_answers=410,
                average_score=75.9,
                time_spent=36000,
                streak_days=5,
                last_simulation_date=now - datetime.timedelta(days=2),
            ),
            created_at=now - datetime.timedelta(days=90),
        ),
        UserRecord(
            id="2",
            name="Maria Santos",
            email="maria@teste.com",
            university="UNICAMP",
            level=5,
            experience=1320,
            statistics=UserStatistics(
                total_simulations=25,
                total_questions=1125,
                correct_answers=990,
                average_score=88.0,
                time_spent=81000,
                streak_days=14,
                last_simulation_date=now - datetime.timedelta(days=1),
            ),
            created_at=now - datetime.timedelta(days=180),
        ),
        UserRecord(
            id="3",
            name="Pedro Costa",
            email="pedro@teste.com",
            created_at=now - datetime.timedelta(days=3),
        ),
    ]

    for user in default_users:
        try:
            await provider.add_user(user)
            logger.info(f"Created default user: {user.email}")
        except ValueError:
            logger.debug(f"Default user already exists: {user.email}")
