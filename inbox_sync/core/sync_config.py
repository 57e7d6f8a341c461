from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from inbox_sync.core.errors import ConfigurationError
from inbox_sync.schemas.messages import SenderType

if TYPE_CHECKING:
    from inbox_sync.core.config import Settings


@dataclass(frozen=True)
class SyncConfig:
    """Everything the sync engine and the webhook intake need, passed in explicitly."""

    gateway_base_url: str = ""
    gateway_api_key: str = ""
    integration_type: str = "whatsapp"
    page_limit: int = 50
    max_pages: int = 200
    fetch_timeout_sec: float = 20.0
    fetch_retries: int = 2
    retry_backoff_sec: float = 0.4
    max_consecutive_page_failures: int = 3
    message_batch_size: int = 100
    outbound_sender_type: SenderType = SenderType.agent

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SyncConfig":
        try:
            outbound = SenderType(settings.SYNC_OUTBOUND_SENDER_TYPE.strip().lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"SYNC_OUTBOUND_SENDER_TYPE must be agent or bot, got {settings.SYNC_OUTBOUND_SENDER_TYPE!r}"
            ) from exc
        return cls(
            gateway_base_url=settings.EVOLUTION_BASE_URL.rstrip("/"),
            gateway_api_key=settings.EVOLUTION_API_KEY,
            integration_type=settings.DEFAULT_INTEGRATION_TYPE,
            page_limit=settings.SYNC_PAGE_LIMIT,
            max_pages=settings.SYNC_MAX_PAGES,
            fetch_timeout_sec=settings.SYNC_FETCH_TIMEOUT_SEC,
            fetch_retries=settings.SYNC_FETCH_RETRIES,
            retry_backoff_sec=settings.SYNC_RETRY_BACKOFF_SEC,
            max_consecutive_page_failures=settings.SYNC_MAX_CONSECUTIVE_PAGE_FAILURES,
            message_batch_size=settings.SYNC_MESSAGE_BATCH_SIZE,
            outbound_sender_type=outbound,
        )

    def validate(self, require_gateway: bool = True) -> None:
        if require_gateway:
            if not self.gateway_base_url:
                raise ConfigurationError("EVOLUTION_BASE_URL is not configured")
            if not self.gateway_api_key:
                raise ConfigurationError("EVOLUTION_API_KEY is not configured")
        if self.page_limit <= 0:
            raise ConfigurationError("page_limit must be positive")
        if self.max_pages <= 0:
            raise ConfigurationError("max_pages must be positive")
        if self.fetch_timeout_sec <= 0:
            raise ConfigurationError("fetch_timeout_sec must be positive")
        if self.fetch_retries < 0:
            raise ConfigurationError("fetch_retries must not be negative")
        if self.max_consecutive_page_failures <= 0:
            raise ConfigurationError("max_consecutive_page_failures must be positive")
        if self.message_batch_size <= 0:
            raise ConfigurationError("message_batch_size must be positive")
        if self.outbound_sender_type == SenderType.contact:
            raise ConfigurationError("outbound_sender_type cannot be contact")
