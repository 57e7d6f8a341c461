from __future__ import annotations

import re
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError

from inbox_sync.core.errors import MalformedRecordError
from inbox_sync.schemas.webhook import WebhookEnvelope
from inbox_sync.services.normalizer import map_gateway_status
from inbox_sync.services.sync_engine import SyncEngine

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    message_upserted = "message_upserted"
    message_updated = "message_updated"
    message_deleted = "message_deleted"
    connection_state_changed = "connection_state_changed"
    other = "other"


_EVENT_NAMES = {
    "messagesupsert": EventKind.message_upserted,
    "messagesset": EventKind.message_upserted,
    "sendmessage": EventKind.message_upserted,
    "messagesupdate": EventKind.message_updated,
    "messagesedited": EventKind.message_updated,
    "messagesdelete": EventKind.message_deleted,
    "connectionupdate": EventKind.connection_state_changed,
}
_SEPARATORS_RE = re.compile(r"[^a-z0-9]")


def classify_event(event_type: str | None) -> EventKind:
    folded = _SEPARATORS_RE.sub("", (event_type or "").lower())
    return _EVENT_NAMES.get(folded, EventKind.other)


def parse_envelope(body: Any) -> WebhookEnvelope:
    if not isinstance(body, dict):
        raise MalformedRecordError("webhook body must be a JSON object")
    try:
        return WebhookEnvelope.model_validate(body)
    except ValidationError as exc:
        raise MalformedRecordError(str(exc)) from exc


def _records(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        # batched upserts arrive as {"messages": [...]}
        nested = payload.get("messages")
        if isinstance(nested, list) and "key" not in payload:
            return [item for item in nested if isinstance(item, dict)]
        return [payload]
    return []


def _external_id(record: dict[str, Any]) -> str | None:
    key = record.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for field in ("keyId", "id"):
        value = record.get(field)
        if value:
            return str(value)
    return None


def _status_value(record: dict[str, Any]) -> Any:
    update = record.get("update")
    if isinstance(update, dict) and update.get("status") is not None:
        return update.get("status")
    return record.get("status")


def _has_body(record: dict[str, Any]) -> bool:
    body = record.get("message")
    if isinstance(body, dict) and body:
        return True
    update = record.get("update")
    return isinstance(update, dict) and isinstance(update.get("message"), dict)


def _as_upsert(record: dict[str, Any]) -> dict[str, Any]:
    update = record.get("update")
    if isinstance(update, dict) and isinstance(update.get("message"), dict):
        merged = {key: value for key, value in record.items() if key != "update"}
        merged.update(update)
        return merged
    return record


class EventIntake:
    """Maps one webhook event onto the sync engine. Never raises, always acknowledges."""

    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine

    async def handle_webhook(
        self, body: Any, instance_ref: str | None = None
    ) -> dict[str, Any]:
        try:
            envelope = parse_envelope(body)
        except MalformedRecordError as exc:
            logger.warning("webhook_malformed", error=str(exc))
            return {"status": "ignored", "reason": "malformed"}
        return await self.handle_event(
            envelope.event_type, instance_ref or envelope.instance, envelope.payload
        )

    async def handle_event(
        self,
        event_type: str | None,
        instance_ref: int | str | None,
        payload: Any,
    ) -> dict[str, Any]:
        kind = classify_event(event_type)
        if kind in (EventKind.connection_state_changed, EventKind.other):
            logger.info("webhook_event_ignored", event_type=event_type, kind=kind.value)
            return {"status": "ignored", "kind": kind.value}

        processed = 0
        failed = 0
        with structlog.contextvars.bound_contextvars(
            event_type=event_type, instance=str(instance_ref)
        ):
            for record in _records(payload):
                try:
                    await self._apply(kind, instance_ref, record)
                    processed += 1
                except Exception as exc:
                    failed += 1
                    logger.exception(
                        "webhook_ingest_failed",
                        external_id=_external_id(record),
                        error=str(exc),
                    )
                    await self._record_failure(kind, instance_ref, record, exc)

        status = "processed" if not failed else "accepted_with_errors"
        return {"status": status, "kind": kind.value, "processed": processed, "failed": failed}

    async def _apply(
        self, kind: EventKind, instance_ref: int | str | None, record: dict[str, Any]
    ) -> None:
        if kind == EventKind.message_upserted:
            await self.engine.ingest_one(record, instance_ref)
            return

        if kind == EventKind.message_updated and _has_body(record):
            await self.engine.ingest_one(_as_upsert(record), instance_ref)
            return

        external_id = _external_id(record)
        if not external_id:
            logger.info("webhook_record_without_id", kind=kind.value)
            return

        if kind == EventKind.message_deleted:
            if not await self.engine.mark_deleted(external_id):
                logger.info("webhook_message_unknown", kind=kind.value, external_id=external_id)
            return

        raw_status = _status_value(record)
        if raw_status is None:
            logger.info("webhook_update_without_status", external_id=external_id)
            return
        status = map_gateway_status(raw_status)
        if not await self.engine.update_status(external_id, status):
            logger.info(
                "webhook_status_not_applied", external_id=external_id, status=status
            )

    async def _record_failure(
        self,
        kind: EventKind,
        instance_ref: int | str | None,
        record: dict[str, Any],
        exc: Exception,
    ) -> None:
        try:
            await self.engine.store.log_event(
                "error",
                "webhook_ingest_failed",
                message=str(exc),
                data={
                    "kind": kind.value,
                    "instance": str(instance_ref),
                    "external_id": _external_id(record),
                },
            )
        except Exception as log_exc:
            logger.warning("app_log_write_failed", error=str(log_exc))
