"""
Service configuration.

Values come from environment variables prefixed with ``CLUB_LEDGER_``
(e.g. ``CLUB_LEDGER_DATABASE_URL``). An empty database URL keeps the
ledger in process memory.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    database_url: str = ""
    database_echo: bool = False
    log_level: str = "INFO"
    log_format: str = "json"
    asset: str = "USDC.e"
    default_performance_days: int = Field(default=30, ge=1, le=365)
    exposure_window_days: int = Field(default=7, ge=1, le=365)
    seed_demo_data: bool = False
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(env_prefix="CLUB_LEDGER_")


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()
