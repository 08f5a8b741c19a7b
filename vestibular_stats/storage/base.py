"""Base statistics provider interface."""

from abc import ABC, abstractmethod
from typing import Optional

from vestibular_stats.models import UserRecord


class StatisticsProviderError(Exception):
    """Raised when the underlying data store cannot answer a query."""


class StatisticsProvider(ABC):
    """Abstract base class for the data sources behind the statistics cache.

    Implementations are pure queries: given the same underlying data they
    return equivalent records. Failures must raise StatisticsProviderError
    (or let their own errors propagate) rather than return empty results.
    """

    @abstractmethod
    async def get_all_users(self) -> list[UserRecord]:
        """Return every user together with their statistics."""
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Return a single user, or None if it does not exist."""
        pass

    @abstractmethod
    async def health_check(self) -> dict:
        """Check if the data store is healthy."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close data store connections."""
        pass
