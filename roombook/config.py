"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./roombook.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Token lifetime in minutes")
    max_failed_logins: int = Field(default=5, description="Failed logins before an account is locked")
    require_activation: bool = Field(
        default=False,
        description="New accounts must redeem an activation token before they can log in",
    )
    activation_token_expire_minutes: int = Field(default=24 * 60, description="Activation token lifetime in minutes")
    reset_token_expire_minutes: int = Field(default=30, description="Password reset token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    room_cache_ttl: int = Field(default=60, description="TTL (s) for cached room status and listing results")

    booking_threshold: int = Field(
        default=3,
        description="Maximum active bookings one user may hold for the same room on the same day",
    )
    max_booking_hours: int = Field(default=8, description="Longest single booking, in hours")
    schedule_open_hour: int = Field(default=8, ge=0, le=23, description="First hour shown in a room schedule")
    schedule_close_hour: int = Field(default=22, ge=1, le=24, description="Hour a room schedule ends")

    feedback_daily_limit: int = Field(default=5, description="Feedback submissions allowed per user per day")
    feedback_min_interval_seconds: int = Field(
        default=60,
        description="Minimum gap between two feedback submissions from the same user",
    )
    feedback_escalation_hours: int = Field(
        default=72,
        description="Pending feedback older than this is moved to in_review by the escalation step",
    )

    notifications_enabled: bool = Field(
        default=False,
        description="Publish booking confirmations to RabbitMQ instead of only logging them",
    )
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ broker host")
    rabbitmq_queue: str = Field(default="bookings", description="Queue receiving booking notifications")
    rabbitmq_account_queue: str = Field(default="accounts", description="Queue receiving activation and reset mail")

    users_service_port: int = 8001
    rooms_service_port: int = 8002
    bookings_service_port: int = 8003
    feedback_service_port: int = 8004
    announcements_service_port: int = 8005


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()
