"""Application configuration for the signaling relay and peer sessions."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    relay_url: str = Field(default="ws://localhost:8000/api/rtc/relay")
    room_capacity: int = Field(default=2, ge=2)
    room_token_bytes: int = Field(default=8, ge=4)
    max_room_attempts: int = Field(default=5, ge=1)

    handshake_timeout_seconds: float = Field(default=30.0, ge=0, description="0 disables the timeout")
    ice_servers: list[str] = Field(default_factory=list)

    media_device: str = Field(default="")
    media_format: str | None = Field(default=None)

    @field_validator("ice_servers", mode="before")
    @classmethod
    def _split_ice_servers(cls, value: object) -> object:
        """Allow comma-separated env values for ICE server URLs."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
