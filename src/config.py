from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "depix-webhooks"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # text | json

    # None keeps everything in process memory (tests, local runs)
    DATABASE_URL: str | None = None

    # Inbound provider endpoint
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 19997
    DEPOSIT_WEBHOOK_SECRET: str | None = None

    # Outbound payment-link delivery
    DELIVERY_TIMEOUT_SECONDS: float = 30.0
    DELIVERY_LEASE_SECONDS: float = 60.0
    DELIVERY_WORKERS: int = 4
    RESPONSE_BODY_LIMIT: int = 1000
    RETRY_JITTER_RATIO: float = 0.1
    MAX_RETRY_DELAY_SECONDS: float = 3600.0
    SWEEP_INTERVAL_SECONDS: float = 5.0
    SWEEP_BATCH_SIZE: int = 50

    # Pending deposits expire after 29m50s
    TRANSACTION_TIMEOUT_SECONDS: int = 29 * 60 + 50
    EXPIRY_INTERVAL_SECONDS: float = 60.0

    # Identical provider redeliveries inside this window are answered from cache
    REPLAY_WINDOW_SECONDS: float = 600.0

    METRICS_WINDOW_SECONDS: float = 300.0
    ALERT_FAILURE_THRESHOLD: float = 0.10

    BOT_SYNC_URL: str | None = None
    BOT_SYNC_TIMEOUT_SECONDS: float = 10.0

    @field_validator("LOG_FORMAT")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"text", "json"}:
            raise ValueError("LOG_FORMAT must be 'text' or 'json'")
        return v

    @field_validator("RETRY_JITTER_RATIO", "ALERT_FAILURE_THRESHOLD")
    @classmethod
    def ratio_in_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("ratio must be between 0 and 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
