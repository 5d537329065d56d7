"""
Runtime configuration for the dashboard backend adapter.

Values come from environment variables prefixed with OPSBOARD_ (or a local
.env file), e.g. OPSBOARD_API_BASE_URL=https://ops.example.com/api.
"""

from functools import lru_cache
from zoneinfo import ZoneInfo
import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class Settings(BaseSettings):
    api_base_url: str = "http://localhost:5000/api"
    api_token: str | None = None
    api_timeout: float = 30.0
    api_retries: int = Field(default=3, ge=0)
    api_retry_delay: float = Field(default=1.0, ge=0)

    language: str = Field(default="ar", pattern="^(ar|en)$")
    timezone: str = "Asia/Riyadh"

    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    inventory_ttl_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)
    ranking_size: int = Field(default=6, ge=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="OPSBOARD_", case_sensitive=False)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
