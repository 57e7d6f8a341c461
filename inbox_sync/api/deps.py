from __future__ import annotations

from functools import lru_cache

from inbox_sync.core.config import settings
from inbox_sync.core.database import AsyncSessionLocal
from inbox_sync.core.sync_config import SyncConfig
from inbox_sync.services.event_intake import EventIntake
from inbox_sync.services.gateway_client import EvolutionGatewayClient
from inbox_sync.services.sql_store import SqlAlchemyStore
from inbox_sync.services.sync_engine import SyncEngine


@lru_cache
def get_sync_config() -> SyncConfig:
    return SyncConfig.from_settings(settings)


def build_sync_engine(config: SyncConfig | None = None) -> SyncEngine:
    config = config or get_sync_config()
    gateway = EvolutionGatewayClient(config) if config.gateway_base_url else None
    return SyncEngine(config, gateway, SqlAlchemyStore(AsyncSessionLocal))


# One engine per process so its per-conversation locks cover every request.
@lru_cache
def get_sync_engine() -> SyncEngine:
    return build_sync_engine()


@lru_cache
def get_event_intake() -> EventIntake:
    return EventIntake(get_sync_engine())
