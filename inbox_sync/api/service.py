from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query

from inbox_sync.api.deps import get_sync_engine
from inbox_sync.core.config import settings
from inbox_sync.core.errors import ConfigurationError
from inbox_sync.schemas.messages import Direction, MessageType, SenderType
from inbox_sync.schemas.rag import RagMessageFilter
from inbox_sync.services.sync_engine import SyncEngine
from inbox_sync.utils.security import keys_match

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["service"])


class InvalidApiTokenError(Exception):
    def __init__(self, api_token: str) -> None:
        super().__init__("Invalid API token")
        self.api_token = api_token


def require_service_key(api_key: str | None = Header(default=None)) -> None:
    token = api_key or ""
    if not keys_match(settings.SERVICE_API_KEY, token):
        raise InvalidApiTokenError(token)


@router.get("/rag/messages")
async def rag_messages(
    conversation_id: int | None = None,
    remote_id: str | None = None,
    integration_instance_id: int | None = None,
    message_type: list[MessageType] | None = Query(default=None),
    direction: Direction | None = None,
    sender_type: SenderType | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    text_only: bool = False,
    limit: int = Query(default=200, ge=1, le=5000),
    engine: SyncEngine = Depends(get_sync_engine),
    _: None = Depends(require_service_key),
) -> dict:
    filters = RagMessageFilter(
        conversation_id=conversation_id,
        remote_id=remote_id,
        integration_instance_id=integration_instance_id,
        message_types=message_type,
        direction=direction,
        sender_type=sender_type,
        start=start,
        end=end,
        text_only=text_only,
        limit=limit,
    )
    items = await engine.store.read_messages_for_rag(filters)
    return {
        "success": True,
        "count": len(items),
        "data": [item.model_dump(mode="json", exclude={"raw_payload"}) for item in items],
    }


async def _run_sync(engine: SyncEngine, instance: str) -> None:
    try:
        report = await engine.sync_all(instance)
    except ConfigurationError as exc:
        logger.error("sync_request_rejected", instance=instance, error=str(exc))
        return
    logger.info("sync_request_done", instance=instance, clean=report.clean)


@router.post("/sync/{instance}")
async def trigger_sync(
    instance: str,
    background_tasks: BackgroundTasks,
    engine: SyncEngine = Depends(get_sync_engine),
    _: None = Depends(require_service_key),
) -> dict:
    if engine.gateway is None:
        raise HTTPException(status_code=503, detail="Gateway is not configured")
    background_tasks.add_task(_run_sync, engine, instance)
    return {"status": "scheduled", "instance": instance}
