from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = False
    api_base_url: str = "http://localhost:3050"
    api_prefix: str = "/api"
    request_timeout_sec: float = Field(default=10.0, gt=0)

    poll_interval_ms: int = Field(default=5000, ge=100)
    poll_max_interval_ms: int = Field(default=60000, ge=100)

    initial_page_size: int = Field(default=50, ge=1, le=100)
    message_max_length: int = 2000
    notification_preview_length: int = 100
    thread_cache_max_entries: int = Field(default=200, ge=1)

    @field_validator("api_prefix", mode="before")
    @classmethod
    def normalize_api_prefix(cls, value: str | None) -> str:
        if not value:
            return ""
        trimmed = value.strip().rstrip("/")
        if trimmed and not trimmed.startswith("/"):
            trimmed = f"/{trimmed}"
        return trimmed


@lru_cache
def get_settings() -> Settings:
    return Settings()
