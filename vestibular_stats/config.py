"""Application configuration with support for config files and environment variables.

Configuration loading precedence (highest to lowest):
1. Environment variables (highest priority)
2. Config file (config.toml or config.yaml)
3. Default values (lowest priority)
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

import tomli
import yaml
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def load_config_file(config_path: Optional[Path] = None) -> dict[str, Any]:
    """Load configuration from TOML or YAML file.

    Args:
        config_path: Optional path to config file. If None, searches for
                    config.toml or config.yaml in current directory.

    Returns:
        Dictionary with configuration values
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        possible_files = [
            Path("config.toml"),
            Path("config.yaml"),
            Path("config.yml"),
            Path("/etc/vestibular-stats/config.toml"),
            Path("/etc/vestibular-stats/config.yaml"),
        ]

        for file_path in possible_files:
            if file_path.exists():
                config_path = file_path
                logger.info(f"Found configuration file: {config_path}")
                break

    if config_path and config_path.exists():
        try:
            with open(config_path, "rb" if config_path.suffix == ".toml" else "r") as f:
                if config_path.suffix == ".toml":
                    config_data = tomli.load(f)
                    logger.info(f"Loaded configuration from TOML: {config_path}")
                elif config_path.suffix in [".yaml", ".yml"]:
                    config_data = yaml.safe_load(f) or {}
                    logger.info(f"Loaded configuration from YAML: {config_path}")
        except Exception as e:
            logger.error(f"Error loading config file {config_path}: {e}")
            raise

    return config_data


class Settings(BaseSettings):
    """Application settings with support for config files and environment variables.

    Configuration loading order (highest to lowest priority):
    1. Environment variables (e.g. VESTIBULAR_USER_STATS_TTL=60)
    2. Config file (config.toml or config.yaml)
    3. Default values

    All values are read once at process start.
    """

    app_name: str = Field(
        default="Vestibular Statistics",
        description="Application name",
    )

    # Cache engine
    cache_default_ttl: int = Field(
        default=300,
        description="Default cache entry TTL in seconds",
        ge=1,
    )
    cache_max_size: int = Field(
        default=500,
        description="Maximum number of cache entries before LRU eviction",
        ge=1,
    )
    cache_cleanup_interval: int = Field(
        default=60,
        description="Seconds between sweeps of expired cache entries",
        ge=1,
    )
    cache_single_flight: bool = Field(
        default=False,
        description="Coalesce concurrent cache misses on the same key into one recompute",
    )

    # Statistics TTLs
    global_stats_ttl: int = Field(
        default=3600,
        description="TTL in seconds for global platform statistics",
        ge=1,
    )
    ranking_stats_ttl: int = Field(
        default=600,
        description="TTL in seconds for ranking statistics",
        ge=1,
    )
    user_stats_ttl: int = Field(
        default=120,
        description="TTL in seconds for per-user detailed statistics",
        ge=1,
    )

    # Rankings
    top_performers_limit: int = Field(
        default=10,
        description="Number of users in the global leaderboard",
        ge=1,
    )
    university_ranking_limit: int = Field(
        default=5,
        description="Number of users in each per-university ranking",
        ge=1,
    )

    # Warmup
    warmup_on_startup: bool = Field(
        default=True,
        description="Warm up the statistics cache in the background at startup",
    )
    warmup_limit: int = Field(
        default=2,
        description="Number of top users whose detailed statistics are warmed up",
        ge=0,
    )

    # Development data
    seed_default_users: bool = Field(
        default=True,
        description="Seed the in-memory provider with default users",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        if isinstance(v, str):
            v = v.upper()
        return v

    @model_validator(mode="after")
    def validate_ttl_ordering(self) -> "Settings":
        """Require global > ranking > user stats TTL > cleanup interval."""
        if not self.global_stats_ttl > self.ranking_stats_ttl > self.user_stats_ttl:
            raise ValueError(
                "TTLs must satisfy global_stats_ttl > ranking_stats_ttl > user_stats_ttl "
                f"(got {self.global_stats_ttl}, {self.ranking_stats_ttl}, {self.user_stats_ttl})"
            )
        if self.user_stats_ttl <= self.cache_cleanup_interval:
            raise ValueError(
                f"user_stats_ttl ({self.user_stats_ttl}) must be greater than "
                f"cache_cleanup_interval ({self.cache_cleanup_interval})"
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="VESTIBULAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Customize settings sources priority.

        Priority order (highest to lowest):
        1. Environment variables
        2. .env file
        3. Init settings (config file values)
        4. Default values
        """
        return (
            env_settings,
            dotenv_settings,
            init_settings,
            file_secret_settings,
        )

    @classmethod
    def from_config_file(cls, config_path: Optional[Path] = None) -> "Settings":
        """Create Settings instance from config file.

        Args:
            config_path: Optional path to config file

        Returns:
            Settings instance with values from config file and environment
        """
        config_data = load_config_file(config_path)
        # Environment variables will override due to settings_customise_sources
        return cls(**config_data)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load application settings from config file and environment.

    Configuration precedence (highest to lowest):
    1. Environment variables (VESTIBULAR_*)
    2. Config file (config.toml or config.yaml)
    3. Default values

    Args:
        config_path: Optional path to config file

    Returns:
        Settings instance with all configuration loaded
    """
    if config_path is None:
        config_path = os.getenv("VESTIBULAR_CONFIG_FILE")

    path_obj = Path(config_path) if config_path else None

    settings = Settings.from_config_file(path_obj)

    logger.info("Configuration loaded successfully")
    logger.info(
        f"  Statistics TTLs: global={settings.global_stats_ttl}s, "
        f"ranking={settings.ranking_stats_ttl}s, user={settings.user_stats_ttl}s"
    )
    logger.info(f"  Cache: max_size={settings.cache_max_size}, cleanup_interval={settings.cache_cleanup_interval}s")
    logger.info(f"  Log level: {settings.log_level}")

    return settings


# Global settings instance
# This will be loaded when the module is imported
try:
    settings = load_settings()
except ValidationError:
    raise
except (OSError, tomli.TOMLDecodeError, yaml.YAMLError) as e:
    logger.warning(f"Error loading config file, using defaults: {e}")
    settings = Settings()
