from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", alias="LOG_LEVEL")


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    env: str = Field(default="development", alias="APP_ENV")
    host: str = Field(default="0.0.0.0", alias="APP_HOST")
    port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="Asia/Ho_Chi_Minh", alias="PRIMARY_TIMEZONE")

    database_url: str = Field(default="sqlite:///./data/servicebay.db", alias="DATABASE_URL")

    api_token: str | None = Field(default=None, alias="API_TOKEN")
    payment_webhook_token: str | None = Field(default=None, alias="PAYMENT_WEBHOOK_TOKEN")

    # Bounded holds; anything left pending past these is released by the sweeper.
    seat_hold_ttl_min: int = Field(default=120, alias="SEAT_HOLD_TTL_MIN")
    parts_hold_ttl_min: int = Field(default=60, alias="PARTS_HOLD_TTL_MIN")
    payment_hold_ttl_min: int = Field(default=30, alias="PAYMENT_HOLD_TTL_MIN")
    hold_sweep_interval_sec: int = Field(default=60, alias="HOLD_SWEEP_INTERVAL_SEC")
    enable_hold_sweeper: bool = Field(default=True, alias="ENABLE_HOLD_SWEEPER")

    stale_write_retries: int = Field(default=3, alias="STALE_WRITE_RETRIES")

    max_reschedules: int = Field(default=2, alias="MAX_RESCHEDULES")
    reschedule_cutoff_hours: int = Field(default=24, alias="RESCHEDULE_CUTOFF_HOURS")
    late_cancel_hours: int = Field(default=24, alias="LATE_CANCEL_HOURS")
    late_cancel_refund_percent: int = Field(default=80, alias="LATE_CANCEL_REFUND_PERCENT")
    deposit_amount: int = Field(default=200000, alias="DEPOSIT_AMOUNT")

    technician_roster: list[str] = Field(default_factory=list, alias="TECHNICIAN_ROSTER")
    auto_create_slots: bool = Field(default=False, alias="AUTO_CREATE_SLOTS")
    default_slot_minutes: int = Field(default=60, alias="DEFAULT_SLOT_MINUTES")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache
def get_settings() -> AppConfig:
    return AppConfig()


def get_config_value(key: str, default: Any | None = None) -> Any:
    settings = get_settings()
    return getattr(settings, key, default)
