from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 3621
DEFAULT_MAX_POLLERS = 1000


class Settings(BaseSettings):
    """
    Runtime configuration loaded from environment variables or a .env file.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    lastfm_api_key: str = Field(..., min_length=1, description="Last.fm API key used for every upstream call")
    lastfm_api_url: str = Field("https://ws.audioscrobbler.com/2.0/", description="Last.fm REST endpoint")
    host: str = Field("0.0.0.0", description="Interface the WebSocket server binds to")
    port: int = Field(DEFAULT_PORT, ge=1, le=65535, description="Port the WebSocket server listens on")
    allowed_origins: str = Field(
        "",
        description="Comma-separated Origin allow-list (e.g. https://a.example,https://b.example); empty allows all",
    )
    max_pollers: int = Field(DEFAULT_MAX_POLLERS, description="Maximum number of distinct usernames polled at once")
    log_level: str = Field("INFO", description="Root logging level")

    upstream_timeout_seconds: float = Field(10.0, gt=0, description="HTTP timeout for Last.fm calls")
    poll_interval_seconds: float = Field(5.0, gt=0, description="Delay between two polls of the same username")
    write_wait_seconds: float = Field(10.0, gt=0, description="Deadline for a single frame write")
    pong_wait_seconds: float = Field(60.0, gt=0, description="Time allowed between two pongs from a client")
    send_queue_size: int = Field(16, ge=1, description="Outbound messages buffered per client before dropping")
    max_message_size: int = Field(512, ge=1, description="Largest inbound frame accepted from a client")
    shutdown_timeout_seconds: float = Field(10.0, gt=0, description="Grace period for open connections on shutdown")

    @field_validator("max_pollers", mode="before")
    @classmethod
    def fallback_max_pollers(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_MAX_POLLERS
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            logging.warning(
                "Invalid MAX_POLLERS value %r: not a valid integer; using default %d", value, DEFAULT_MAX_POLLERS
            )
            return DEFAULT_MAX_POLLERS
        if parsed <= 0:
            logging.warning(
                "Invalid MAX_POLLERS value %r: must be greater than 0; using default %d", value, DEFAULT_MAX_POLLERS
            )
            return DEFAULT_MAX_POLLERS
        return parsed

    @property
    def ping_period_seconds(self) -> float:
        # Pings must go out before the peer's read deadline expires.
        return self.pong_wait_seconds * 9 / 10

    def allowed_origin_list(self) -> list[str]:
        return [entry.strip() for entry in self.allowed_origins.split(",") if entry.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Cached accessor so every component reuses the same Settings instance.
    """

    return Settings()  # type: ignore[call-arg]
