"""Configuration management for agile-board."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Document store configuration
    store_backend: Literal["memory", "sqlite"] = Field(
        default="memory", description="Document store adapter to use (memory or sqlite)"
    )
    sqlite_db_path: str = Field(default="./data/board.db", description="SQLite file used by the sqlite backend")

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")
    environment: str = Field(default="development", description="Deployment environment reported to Logfire")

    # Network retry policy
    network_retry_attempts: int = Field(default=3, description="Attempts for store calls failing with network errors")
    network_retry_base_delay: float = Field(default=1.0, description="Base backoff delay in seconds")
    network_retry_max_delay: float = Field(default=30.0, description="Upper bound for a single backoff delay")

    # Transaction retry policy
    transaction_max_retries: int = Field(
        default=2, description="Retries after an aborted transaction before surfacing a concurrency error"
    )
    transaction_retry_base_delay: float = Field(default=0.5, description="Base backoff delay for aborted transactions")

    # Offline mode
    offline_queue_max_size: int = Field(default=100, description="Maximum writes held while the store is unreachable")

    # Notifications
    notification_retention: int = Field(default=10, description="Most recent notifications kept per user")

    # Cleanup scheduling
    cleanup_interval_hours: int = Field(default=24, description="Hours between periodic cleanup sweeps")

    # Scoring
    collaborator_early_bonus: bool = Field(
        default=False, description="Grant the early-finish bonus to collaborators as well as the owner"
    )

    # Slow operation thresholds
    slow_operation_warn_seconds: float = Field(default=1.0, description="Duration after which an operation is delayed")
    slow_operation_seconds: float = Field(default=2.0, description="Duration after which an operation is slow")


# Application Constants
class Constants:
    """Application-wide constants."""

    # Story points
    FIBONACCI_SCALE: tuple[int, ...] = (0, 1, 2, 3, 5, 8, 13, 21, 34, 55, 89)

    # Levels
    LEVEL_POINTS_DIVISOR: int = 100  # level = floor(sqrt(points / 100))

    # Point awards
    EARLY_BONUS_DIVISOR: int = 10  # owner bonus = floor(story_point * 0.1)
    COLLABORATOR_SHARE_DIVISOR: int = 5  # collaborator share = ceil(story_point * 0.2)
    MIN_COLLABORATOR_POINTS: int = 1

    # Validation
    EMAIL_PATTERN: str = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

    # Scheduler job ids
    CLEANUP_JOB_PREFIX: str = "cleanup"

    # Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent.parent


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
constants = Constants()
