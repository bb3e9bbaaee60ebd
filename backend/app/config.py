from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Judgeline Realtime", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    database_url: str = Field(
        default="sqlite+pysqlite:///./judgeline.db",
        description="SQLAlchemy URL of the durable store used by the SQL gateway",
    )
    gateway_backend: Literal["memory", "sql"] = Field(
        default="memory",
        description="Persistence gateway implementation wired by the service",
    )

    realtime_redis_url: str | None = Field(default=None, description="Redis URL for realtime fan-out")
    realtime_nats_url: str | None = Field(default=None, description="NATS URL for realtime fan-out")
    realtime_namespace: str = Field(default="judgeline.realtime", description="Prefix for broker topics")
    realtime_node_id: str | None = Field(default=None, description="Identifier of this process on the broker")
    realtime_backend_preference: Literal["redis", "nats"] | None = Field(
        default=None, description="Force a broker backend instead of auto-detecting it"
    )

    realtime_typing_ttl_seconds: float = Field(
        default=3.0, gt=0, description="Lifetime of a typing indicator without a new signal"
    )
    realtime_resubscribe_delay_seconds: float = Field(
        default=5.0, ge=0, description="Delay before a conversation view resubscribes after a channel error"
    )
    optimistic_timeout_seconds: float = Field(
        default=15.0, gt=0, description="How long a provisional message may wait for its persisted row"
    )
    optimistic_match_window_seconds: float = Field(
        default=30.0, ge=0, description="Timestamp tolerance when matching an echoed row to a provisional one"
    )
    read_receipt_delay_seconds: float = Field(
        default=0.5, ge=0, description="Delay before writing back read timestamps for inbound messages"
    )
    sender_lookup_attempts: int = Field(
        default=3, ge=1, description="Attempts to resolve the sender profile of an inbound message"
    )
    sender_lookup_backoff_seconds: float = Field(
        default=1.0, ge=0, description="Linear backoff step between sender profile attempts"
    )

    notification_window: int = Field(
        default=50,
        ge=1,
        description="Number of most recent notifications loaded; unread is counted within this window only",
    )
    notification_os_permission: bool = Field(
        default=False, description="Whether the user previously granted OS-level notifications"
    )

    card_search_url: AnyHttpUrl = Field(
        default="https://api.scryfall.com", description="Base URL of the card search API"
    )
    card_search_limit: int = Field(default=20, ge=1, description="Maximum card results kept per search")
    card_search_timeout_seconds: float = Field(default=10.0, gt=0, description="Card search request timeout")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("realtime_redis_url", "realtime_nats_url", "realtime_node_id", mode="before")
    @classmethod
    def blank_as_none(cls, value):  # type: ignore[override]
        if value in ("", Ellipsis):
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
