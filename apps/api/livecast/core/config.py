"""Application configuration for the livecast signaling service."""
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

    stun_urls: list[str] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    ])
    turn_url: str = Field(default="")
    turn_username: str = Field(default="")
    turn_credential: str = Field(default="")

    signaling_url: str = Field(default="ws://127.0.0.1:8000/api/rtc/signaling")
    signaling_heartbeat: float = Field(default=20.0, gt=0)

    @field_validator("stun_urls", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value

    @property
    def turn_enabled(self) -> bool:
        return bool(self.turn_url and self.turn_username and self.turn_credential)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
