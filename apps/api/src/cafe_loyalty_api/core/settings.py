from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./cafe_loyalty.db"
    database_echo: bool = False

    # Logging / tracing
    log_level: str = "INFO"
    log_json: bool = True
    tracing_enabled: bool = True
    otel_exporter_endpoint: str | None = None
    otel_exporter_headers: str | None = None

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).strip().upper() or "INFO"

    # Staff / terminal security
    staff_api_key: str = ""

    # Points policy
    points_expiration_days: int = Field(default=15, ge=0, le=3650)
    points_expiring_soon_days: int = Field(default=7, ge=0, le=365)
    redemption_conflict_retries: int = Field(default=1, ge=0)

    # Ledger automation scheduler
    ledger_job_scheduler_enabled: bool = False
    ledger_job_schedule_path: str = "config/schedules.toml"
    expiration_sweep_batch_size: int = Field(default=200, gt=0)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
