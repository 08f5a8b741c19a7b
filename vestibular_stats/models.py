"""Pydantic models for statistics records, cache metrics and API responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class UserStatistics(BaseModel):
    """Raw usage counters stored on a user record."""

    total_simulations: int = Field(default=0, ge=0)
    total_questions: int = Field(default=0, ge=0)
    correct_answers: int = Field(default=0, ge=0)
    average_score: float = Field(default=0.0, description="Average score in percent")
    time_spent: int = Field(default=0, ge=0, description="Total study time in seconds")
    streak_days: int = Field(default=0, ge=0)
    last_simulation_date: Optional[datetime] = None


class UserRecord(BaseModel):
    """User record as returned by a statistics provider."""

    id: str = Field(..., min_length=1)
    name: str
    email: str
    university: Optional[str] = None
    level: Optional[int] = Field(default=None, ge=1)
    experience: Optional[int] = Field(default=None, ge=0)
    statistics: Optional[UserStatistics] = None
    created_at: datetime

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "1",
                    "name": "João Silva",
                    "email": "joao@teste.com",
                    "university": "USP",
                    "level": 3,
                    "experience": 450,
                    "statistics": {
                        "total_simulations": 12,
                        "total_questions": 540,
                        "correct_answers": 410,
                        "average_score": 75.9,
                        "time_spent": 36000,
                        "streak_days": 5,
                        "last_simulation_date": "2025-10-09T12:00:00Z",
                    },
                    "created_at": "2025-01-10T09:00:00Z",
                }
            ]
        }
    }


class GlobalStatistics(BaseModel):
    """Platform-wide aggregates."""

    total_users: int
    total_simulations: int
    total_questions: int
    average_global_score: float
    total_study_time: int = Field(..., description="Total study time in minutes")
    active_users_last_7_days: int
    active_users_last_30_days: int
    calculated_at: datetime


class RankingEntry(BaseModel):
    """A single row of the global leaderboard."""

    user_id: str
    name: str
    email: str
    average_score: float
    total_simulations: int
    position: int = Field(..., ge=1)


class UniversityRankingEntry(BaseModel):
    """A single row of a per-university leaderboard."""

    user_id: str
    name: str
    average_score: float
    total_simulations: int


class RankingStatistics(BaseModel):
    """Leaderboard plus per-university sub-rankings."""

    top_performers: list[RankingEntry] = Field(default_factory=list)
    university_rankings: dict[str, list[UniversityRankingEntry]] = Field(default_factory=dict)
    calculated_at: datetime


class AdvancedStats(BaseModel):
    """Derived efficiency and trend metrics for a user."""

    avg_questions_per_simulation: int
    avg_time_per_question: int = Field(..., description="Seconds per question")
    efficiency_rate: float = Field(..., description="Correct answers per hour of study")
    study_frequency: float = Field(..., description="Simulations per week since joining")
    performance_trend: str
    days_since_joined: int
    active_in_last_7_days: bool
    active_in_last_30_days: bool


class ProgressStats(BaseModel):
    """Level and XP progress for a user."""

    current_level: int
    experience: int
    xp_to_next_level: int
    completion_rate: float
    study_consistency: float


class Recommendations(BaseModel):
    """Textual study recommendations."""

    suggested_study_time: str
    focus_areas: list[str]
    next_goal: str


class DetailedUserStatistics(BaseModel):
    """Detailed statistics for a single user."""

    user_id: str
    basic: UserStatistics
    advanced: AdvancedStats
    progress: ProgressStats
    recommendations: Recommendations
    calculated_at: datetime


class CacheMetrics(BaseModel):
    """Snapshot of cache engine counters."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    entries: int = 0
    hit_rate: float = Field(default=0.0, description="Hit rate in percent")
    memory_usage: int = Field(default=0, description="Estimated memory usage in bytes")


class CacheMetricsResponse(CacheMetrics):
    """Cache metrics with human readable fields."""

    hit_rate_formatted: str
    memory_usage_formatted: str


class OperationResponse(BaseModel):
    """Generic acknowledgement for cache management operations."""

    success: bool = True
    message: str
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    version: str = "0.1.0"


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, str]


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    details: Optional[Any] = None
