"""Engine configuration loaded from the environment."""
import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """Tunable parameters of the notification engine."""

    database_url: str = "sqlite:///./plant_notifications.db"
    log_level: str = "INFO"
    default_user_id: str = "current_user"

    batch_window_minutes: int = Field(default=60, gt=0)
    max_batch_size: int = Field(default=5, ge=1)
    activity_tolerance_hours: int = Field(default=3, ge=0, le=23)
    # Days overdue at which the overdue ratio reaches 100%
    critical_horizon_days: float = Field(default=3.0, gt=0)
    overdue_poll_seconds: float = Field(default=300.0, gt=0)
    operation_timeout_seconds: float = Field(default=10.0, gt=0)
    max_retry_attempts: int = Field(default=5, ge=0)
    store_retry_attempts: int = Field(default=3, ge=1)
    profile_cache_ttl_seconds: float = Field(default=3600.0, ge=0)

    @property
    def batch_window(self) -> timedelta:
        return timedelta(minutes=self.batch_window_minutes)

    @property
    def critical_horizon(self) -> timedelta:
        return timedelta(days=self.critical_horizon_days)

    @property
    def profile_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.profile_cache_ttl_seconds)

    @staticmethod
    def from_env() -> "EngineSettings":
        """Build settings from environment variables (and a local .env file)."""
        load_dotenv()
        return EngineSettings(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./plant_notifications.db"),
            log_level=os.getenv("NOTIFIER_LOG_LEVEL", "INFO"),
            default_user_id=os.getenv("NOTIFIER_DEFAULT_USER_ID", "current_user"),
            batch_window_minutes=int(os.getenv("NOTIFIER_BATCH_WINDOW_MINUTES", "60")),
            max_batch_size=int(os.getenv("NOTIFIER_MAX_BATCH_SIZE", "5")),
            activity_tolerance_hours=int(os.getenv("NOTIFIER_ACTIVITY_TOLERANCE_HOURS", "3")),
            critical_horizon_days=float(os.getenv("NOTIFIER_CRITICAL_HORIZON_DAYS", "3")),
            overdue_poll_seconds=float(os.getenv("NOTIFIER_OVERDUE_POLL_SECONDS", "300")),
            operation_timeout_seconds=float(os.getenv("NOTIFIER_OPERATION_TIMEOUT_SECONDS", "10")),
            max_retry_attempts=int(os.getenv("NOTIFIER_MAX_RETRY_ATTEMPTS", "5")),
            store_retry_attempts=int(os.getenv("NOTIFIER_STORE_RETRY_ATTEMPTS", "3")),
            profile_cache_ttl_seconds=float(os.getenv("NOTIFIER_PROFILE_CACHE_TTL_SECONDS", "3600")),
        )
