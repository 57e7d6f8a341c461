from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field

from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    EVOLUTION_BASE_URL: str = Field(
        default="",
        validation_alias=AliasChoices("EVOLUTION_BASE_URL", "EVOLUTION_API_URL"),
    )
    EVOLUTION_API_KEY: str = ""
    SERVICE_API_KEY: str = ""
    WEBHOOK_SECRET: str | None = None

    DEFAULT_INTEGRATION_TYPE: str = "whatsapp"

    SYNC_PAGE_LIMIT: int = 50
    SYNC_MAX_PAGES: int = 200
    SYNC_FETCH_TIMEOUT_SEC: float = 20.0
    SYNC_FETCH_RETRIES: int = 2
    SYNC_RETRY_BACKOFF_SEC: float = 0.4
    SYNC_MAX_CONSECUTIVE_PAGE_FAILURES: int = 3
    SYNC_MESSAGE_BATCH_SIZE: int = 100
    SYNC_OUTBOUND_SENDER_TYPE: str = "agent"


settings = Settings()
