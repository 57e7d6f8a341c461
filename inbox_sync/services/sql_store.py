from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, case, func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inbox_sync.core.errors import ConflictResolutionError
from inbox_sync.models.conversation import CONVERSATION_NATURAL_KEY, Conversation
from inbox_sync.models.integration_instance import IntegrationInstance
from inbox_sync.models.message import MESSAGE_EXTERNAL_ID_KEY, ConversationMessage
from inbox_sync.models.sync_run import SyncRun
from inbox_sync.schemas.messages import (
    CanonicalMessage,
    ConversationKey,
    Direction,
    InstanceDescriptor,
    MessageType,
    SenderType,
)
from inbox_sync.schemas.rag import RagMessageFilter
from inbox_sync.schemas.sync import SyncReport
from inbox_sync.services import app_log_store
from inbox_sync.services.conversation_keys import canonical_remote_id
from inbox_sync.services.store import (
    PREVIEW_LENGTH,
    STATUS_RANK,
    ConversationFields,
    ConversationRow,
    ConversationStore,
    message_preview,
    status_rank,
)
from inbox_sync.utils.time import EPOCH, utc_now

logger = structlog.get_logger(__name__)

_EMPTY_JSONB = literal_column("'{}'::jsonb", type_=JSONB)

conversation_table = Conversation.__table__
message_table = ConversationMessage.__table__
instance_table = IntegrationInstance.__table__


def _jsonb_or_empty(expr: Any) -> Any:
    return func.coalesce(expr, _EMPTY_JSONB, type_=JSONB)


def _concat(left: Any, right: Any) -> Any:
    return left.op("||", return_type=JSONB)(right)


def build_conversation_upsert(key: ConversationKey, fields: ConversationFields):
    stmt = insert(conversation_table).values(
        account_id=key.account_id,
        integration_type=key.integration_type,
        contact_id=key.contact_id,
        integration_instance_id=key.integration_instance_id,
        contact_name=fields.contact_name,
        contact_metadata=dict(fields.metadata),
        status="active",
        message_count=0,
        sync_status=fields.sync_status,
        last_synced_at=fields.synced_at,
    )
    existing_meta = _jsonb_or_empty(conversation_table.c.contact_metadata)
    incoming_meta = _jsonb_or_empty(stmt.excluded.contact_metadata)
    # message_types is a set stored as an object, merged key-wise
    merged_types = _concat(
        _jsonb_or_empty(existing_meta["message_types"]),
        _jsonb_or_empty(incoming_meta["message_types"]),
    )
    if fields.contact_name_authoritative:
        contact_name = stmt.excluded.contact_name
    else:
        contact_name = func.coalesce(
            conversation_table.c.contact_name, stmt.excluded.contact_name
        )
    return stmt.on_conflict_do_update(
        constraint=CONVERSATION_NATURAL_KEY,
        set_={
            "contact_name": contact_name,
            "contact_metadata": _concat(
                _concat(existing_meta, incoming_meta),
                func.jsonb_build_object("message_types", merged_types),
            ),
            "sync_status": stmt.excluded.sync_status,
            "last_synced_at": func.coalesce(
                stmt.excluded.last_synced_at, conversation_table.c.last_synced_at
            ),
            "updated_at": func.now(),
        },
    ).returning(*conversation_table.c)


def _message_values(conversation_id: int, message: CanonicalMessage) -> dict[str, Any]:
    return {
        "conversation_id": conversation_id,
        "external_message_id": message.external_id,
        "content": message.content,
        "message_type": message.message_type.value,
        "direction": message.direction.value,
        "sender_type": message.sender_type.value,
        "sender_name": message.sender_display_name[:255],
        "sender_id": message.sender_identifier[:128],
        "status": message.status,
        "external_timestamp": message.occurred_at,
        "external_metadata": {
            "remote_id": message.remote_id,
            "is_group": message.is_group,
            "push_name": message.push_name,
            "variant": message.variant,
            "raw": message.raw_payload,
        },
        "deleted_at": None,
    }


def build_message_upsert(conversation_id: int, batch: list[CanonicalMessage]):
    # one row per external id, otherwise postgres refuses to touch a row twice
    unique: dict[str, CanonicalMessage] = {}
    for message in batch:
        unique[message.external_id] = message
    stmt = insert(message_table).values(
        [_message_values(conversation_id, message) for message in unique.values()]
    )
    return stmt.on_conflict_do_update(
        constraint=MESSAGE_EXTERNAL_ID_KEY,
        set_={
            "conversation_id": stmt.excluded.conversation_id,
            "content": stmt.excluded.content,
            "message_type": stmt.excluded.message_type,
            "direction": stmt.excluded.direction,
            "sender_type": stmt.excluded.sender_type,
            "sender_name": stmt.excluded.sender_name,
            "sender_id": stmt.excluded.sender_id,
            "status": stmt.excluded.status,
            "external_timestamp": stmt.excluded.external_timestamp,
            "external_metadata": stmt.excluded.external_metadata,
            "deleted_at": None,
            "updated_at": func.now(),
        },
    ).returning(
        message_table.c.external_message_id,
        literal_column("(xmax = 0)").label("inserted"),
    )


def build_stats_update(
    conversation_id: int,
    latest: CanonicalMessage | None,
    set_count: int | None = None,
    add_count: int = 0,
):
    values: dict[str, Any] = {"updated_at": func.now()}
    if set_count is not None:
        values["message_count"] = set_count
    elif add_count:
        current = func.coalesce(conversation_table.c.message_count, 0)
        values["message_count"] = current + add_count

    if latest is not None:
        newer = or_(
            conversation_table.c.last_message_at.is_(None),
            conversation_table.c.last_message_at < latest.occurred_at,
            and_(
                conversation_table.c.last_message_at == latest.occurred_at,
                func.coalesce(conversation_table.c.last_message_external_id, "")
                <= latest.external_id,
            ),
        )
        candidate = {
            "last_message_at": latest.occurred_at,
            "last_message_preview": message_preview(latest),
            "last_message_from": latest.sender_type.value,
            "last_message_external_id": latest.external_id,
        }
        for column, value in candidate.items():
            values[column] = case((newer, value), else_=conversation_table.c[column])

    return (
        update(conversation_table)
        .where(conversation_table.c.id == conversation_id)
        .values(**values)
    )


def _latest_live(conversation_id: int, column: Any) -> Any:
    return (
        select(column)
        .where(
            message_table.c.conversation_id == conversation_id,
            message_table.c.deleted_at.is_(None),
        )
        .order_by(
            message_table.c.external_timestamp.desc().nullslast(),
            message_table.c.external_message_id.desc(),
        )
        .limit(1)
        .scalar_subquery()
    )


def build_status_update(external_id: str, status: str):
    current_rank = case(STATUS_RANK, value=message_table.c.status, else_=0)
    return (
        update(message_table)
        .where(
            message_table.c.external_message_id == external_id,
            message_table.c.deleted_at.is_(None),
            current_rank <= status_rank(status),
        )
        .values(status=status, updated_at=func.now())
    )


def build_refresh_last_message(conversation_id: int):
    return (
        update(conversation_table)
        .where(conversation_table.c.id == conversation_id)
        .values(
            last_message_at=_latest_live(conversation_id, message_table.c.external_timestamp),
            last_message_preview=func.left(
                _latest_live(conversation_id, message_table.c.content), PREVIEW_LENGTH
            ),
            last_message_from=_latest_live(conversation_id, message_table.c.sender_type),
            last_message_external_id=_latest_live(
                conversation_id, message_table.c.external_message_id
            ),
            updated_at=func.now(),
        )
    )


def build_rag_query(filters: RagMessageFilter):
    stmt = select(ConversationMessage, Conversation).join(
        Conversation, ConversationMessage.conversation_id == Conversation.id
    )
    if filters.conversation_id is not None:
        stmt = stmt.where(ConversationMessage.conversation_id == filters.conversation_id)
    if filters.remote_id:
        stmt = stmt.where(Conversation.contact_id == canonical_remote_id(filters.remote_id))
    if filters.integration_instance_id is not None:
        stmt = stmt.where(
            Conversation.integration_instance_id == filters.integration_instance_id
        )
    if filters.message_types:
        stmt = stmt.where(
            ConversationMessage.message_type.in_([t.value for t in filters.message_types])
        )
    if filters.direction is not None:
        stmt = stmt.where(ConversationMessage.direction == filters.direction.value)
    if filters.sender_type is not None:
        stmt = stmt.where(ConversationMessage.sender_type == filters.sender_type.value)
    if filters.start is not None:
        stmt = stmt.where(ConversationMessage.external_timestamp >= filters.start)
    if filters.end is not None:
        stmt = stmt.where(ConversationMessage.external_timestamp <= filters.end)
    if filters.text_only:
        stmt = stmt.where(
            ConversationMessage.message_type == MessageType.text.value,
            ~ConversationMessage.content.startswith("["),
        )
    if not filters.include_deleted:
        stmt = stmt.where(ConversationMessage.deleted_at.is_(None))
    stmt = stmt.order_by(
        ConversationMessage.external_timestamp.asc(),
        ConversationMessage.external_message_id.asc(),
    )
    if filters.limit:
        stmt = stmt.limit(filters.limit)
    return stmt


def to_conversation_row(row: Any) -> ConversationRow:
    return ConversationRow(
        id=row["id"],
        key=ConversationKey(
            account_id=row["account_id"],
            integration_type=row["integration_type"],
            contact_id=row["contact_id"],
            integration_instance_id=row["integration_instance_id"],
        ),
        contact_name=row["contact_name"],
        contact_metadata=row["contact_metadata"] or {},
        status=row["status"],
        message_count=row["message_count"] or 0,
        last_message_at=row["last_message_at"],
        last_message_preview=row["last_message_preview"],
        last_message_from=row["last_message_from"],
        last_message_external_id=row["last_message_external_id"],
        created_at=row["created_at"],
    )


def _descriptor(instance: IntegrationInstance) -> InstanceDescriptor:
    return InstanceDescriptor(
        instance_id=instance.id,
        account_id=instance.account_id,
        instance_key=instance.instance_key,
        integration_type=instance.integration_type,
        display_name=instance.display_name,
    )


def _to_canonical(message: ConversationMessage, conversation: Conversation) -> CanonicalMessage:
    meta = message.external_metadata or {}
    raw = meta.get("raw")
    return CanonicalMessage(
        external_id=message.external_message_id or f"local-{message.id}",
        conversation_key=ConversationKey(
            account_id=conversation.account_id,
            integration_type=conversation.integration_type,
            contact_id=conversation.contact_id,
            integration_instance_id=conversation.integration_instance_id,
        ),
        remote_id=conversation.contact_id,
        is_group=bool(meta.get("is_group")),
        content=message.content,
        message_type=MessageType(message.message_type),
        direction=Direction(message.direction),
        sender_type=SenderType(message.sender_type),
        sender_display_name=message.sender_name or "",
        sender_identifier=message.sender_id or "",
        push_name=meta.get("push_name"),
        variant=meta.get("variant"),
        occurred_at=message.external_timestamp or EPOCH,
        status=message.status,
        raw_payload=raw if isinstance(raw, dict) else {},
    )


def _run_status(report: SyncReport) -> str:
    if report.cancelled:
        return "cancelled"
    if report.errors:
        return "partial"
    return "success"


class SqlAlchemyStore(ConversationStore):
    """PostgreSQL store. Relies on ON CONFLICT for both natural keys."""

    supports_atomic_upsert = True

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_instance(self, ref: int | str) -> InstanceDescriptor | None:
        ref_text = str(ref).strip()
        condition = IntegrationInstance.instance_key == ref_text
        if ref_text.isdigit():
            condition = or_(IntegrationInstance.id == int(ref_text), condition)
        async with self.session_factory() as session:
            result = await session.execute(
                select(IntegrationInstance)
                .where(condition)
                .order_by(IntegrationInstance.id.asc())
            )
            instance = result.scalars().first()
        return _descriptor(instance) if instance else None

    async def list_instances(self) -> list[InstanceDescriptor]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IntegrationInstance).order_by(IntegrationInstance.id.asc())
            )
            return [_descriptor(instance) for instance in result.scalars().all()]

    async def upsert_instance(
        self,
        account_id: str,
        instance_key: str,
        integration_type: str,
        display_name: str | None = None,
    ) -> InstanceDescriptor:
        stmt = insert(instance_table).values(
            account_id=account_id,
            instance_key=instance_key,
            integration_type=integration_type,
            display_name=display_name,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[instance_table.c.instance_key],
            set_={
                "display_name": func.coalesce(
                    stmt.excluded.display_name, instance_table.c.display_name
                ),
                "updated_at": func.now(),
            },
        ).returning(*instance_table.c)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).mappings().one()
            await session.commit()
        return InstanceDescriptor(
            instance_id=row["id"],
            account_id=row["account_id"],
            instance_key=row["instance_key"],
            integration_type=row["integration_type"],
            display_name=row["display_name"],
        )

    async def upsert_conversation(
        self, key: ConversationKey, fields: ConversationFields
    ) -> ConversationRow:
        async with self.session_factory() as session:
            row = (await session.execute(build_conversation_upsert(key, fields))).mappings().one()
            await session.commit()
        return to_conversation_row(row)

    async def upsert_messages(
        self, conversation_id: int, messages: list[CanonicalMessage]
    ) -> list[str]:
        if not messages:
            return []
        async with self.session_factory() as session:
            try:
                result = await session.execute(build_message_upsert(conversation_id, messages))
                rows = result.all()
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictResolutionError(
                    str(exc.orig),
                    external_ids=[message.external_id for message in messages],
                ) from exc
        return [row.external_message_id for row in rows if row.inserted]

    async def apply_message_stats(
        self,
        conversation_id: int,
        latest: CanonicalMessage | None,
        set_count: int | None = None,
        add_count: int = 0,
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                build_stats_update(conversation_id, latest, set_count, add_count)
            )
            await session.commit()

    async def mark_message_deleted(
        self, external_id: str, deleted_at: datetime
    ) -> int | None:
        stmt = (
            update(message_table)
            .where(message_table.c.external_message_id == external_id)
            .values(status="deleted", deleted_at=deleted_at, updated_at=func.now())
            .returning(message_table.c.conversation_id)
        )
        async with self.session_factory() as session:
            conversation_id = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return conversation_id

    async def update_message_status(self, external_id: str, status: str) -> bool:
        stmt = build_status_update(external_id, status)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)

    async def refresh_last_message(self, conversation_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(build_refresh_last_message(conversation_id))
            await session.commit()

    async def read_messages_for_rag(
        self, filters: RagMessageFilter
    ) -> list[CanonicalMessage]:
        async with self.session_factory() as session:
            result = await session.execute(build_rag_query(filters))
            return [_to_canonical(message, conversation) for message, conversation in result.all()]

    async def start_sync_run(self, instance_id: int) -> int | None:
        async with self.session_factory() as session:
            run = SyncRun(
                integration_instance_id=instance_id,
                status="running",
                started_at=utc_now(),
                error_count=0,
            )
            session.add(run)
            await session.commit()
            return run.id

    async def finish_sync_run(self, run_id: int | None, report: SyncReport) -> None:
        if not run_id:
            return
        async with self.session_factory() as session:
            run = await session.get(SyncRun, run_id)
            if not run:
                logger.warning("sync_run_missing", run_id=run_id)
                return
            run.status = _run_status(report)
            run.finished_at = report.finished_at or utc_now()
            run.fetched_count = report.fetched_messages
            run.processed_messages = report.processed_messages
            run.processed_conversations = report.processed_conversations
            run.error_count = len(report.errors)
            run.errors = [error.model_dump() for error in report.errors[:200]]
            run.error_message = report.errors[0].message[:1000] if report.errors else None
            await session.commit()

    async def log_event(
        self,
        level: str,
        event_type: str,
        message: str | None = None,
        data: dict | None = None,
        instance_id: int | None = None,
    ) -> None:
        async with self.session_factory() as session:
            await app_log_store.log_event(
                session,
                level=level,
                event_type=event_type,
                message=message,
                data=data,
                integration_instance_id=instance_id,
            )
