from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inbox_sync.schemas.messages import ConversationKey
from inbox_sync.services.app_log_store import log_event
from inbox_sync.services.conversation_keys import resolve_key
from inbox_sync.services.sql_store import (
    build_refresh_last_message,
    conversation_table,
    message_table,
    to_conversation_row,
)
from inbox_sync.services.store import ConversationRow

logger = structlog.get_logger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class MergePlan:
    canonical_key: ConversationKey
    survivor_id: int
    survivor_contact_id: str
    duplicate_ids: list[int] = field(default_factory=list)

    @property
    def needs_rekey(self) -> bool:
        return self.survivor_contact_id != self.canonical_key.contact_id


def plan_merges(rows: list[ConversationRow]) -> list[MergePlan]:
    """Group rows whose natural keys collapse to the same canonical tuple.

    The earliest-created row survives (lowest id on ties); every other
    row of the group is a duplicate to fold into it.
    """
    groups: dict[ConversationKey, list[ConversationRow]] = defaultdict(list)
    for row in rows:
        canonical = resolve_key(
            row.key.account_id,
            row.key.integration_type,
            row.key.integration_instance_id,
            row.key.contact_id,
        )
        groups[canonical].append(row)

    plans: list[MergePlan] = []
    for canonical, members in groups.items():
        ordered = sorted(members, key=lambda item: (item.created_at or _FAR_FUTURE, item.id))
        survivor = ordered[0]
        plan = MergePlan(
            canonical_key=canonical,
            survivor_id=survivor.id,
            survivor_contact_id=survivor.key.contact_id,
            duplicate_ids=[item.id for item in ordered[1:]],
        )
        if plan.duplicate_ids or plan.needs_rekey:
            plans.append(plan)
    plans.sort(key=lambda item: item.survivor_id)
    return plans


async def load_conversations(session: AsyncSession) -> list[ConversationRow]:
    result = await session.execute(
        select(*conversation_table.c).order_by(conversation_table.c.id.asc())
    )
    return [to_conversation_row(row) for row in result.mappings().all()]


async def apply_merge(session: AsyncSession, plan: MergePlan) -> int:
    moved = 0
    if plan.duplicate_ids:
        result = await session.execute(
            update(message_table)
            .where(message_table.c.conversation_id.in_(plan.duplicate_ids))
            .values(conversation_id=plan.survivor_id, updated_at=func.now())
        )
        moved = result.rowcount or 0
        await session.execute(
            delete(conversation_table).where(conversation_table.c.id.in_(plan.duplicate_ids))
        )
    if plan.needs_rekey:
        # duplicates are gone, so the canonical tuple is free now
        await session.execute(
            update(conversation_table)
            .where(conversation_table.c.id == plan.survivor_id)
            .values(contact_id=plan.canonical_key.contact_id)
        )
    message_count = (
        select(func.count())
        .select_from(message_table)
        .where(message_table.c.conversation_id == plan.survivor_id)
        .scalar_subquery()
    )
    await session.execute(
        update(conversation_table)
        .where(conversation_table.c.id == plan.survivor_id)
        .values(message_count=message_count)
    )
    await session.execute(build_refresh_last_message(plan.survivor_id))
    return moved


async def merge_duplicate_conversations(
    session_factory: async_sessionmaker[AsyncSession], execute: bool = False
) -> list[MergePlan]:
    async with session_factory() as session:
        plans = plan_merges(await load_conversations(session))
    logger.info(
        "conversation_merge_planned",
        plans=len(plans),
        duplicates=sum(len(plan.duplicate_ids) for plan in plans),
        execute=execute,
    )
    if not execute:
        return plans

    for plan in plans:
        async with session_factory() as session:
            moved = await apply_merge(session, plan)
            await log_event(
                session,
                level="info",
                event_type="conversation_merged",
                data={
                    "survivor_id": plan.survivor_id,
                    "duplicate_ids": plan.duplicate_ids,
                    "moved_messages": moved,
                    "contact_id": plan.canonical_key.contact_id,
                },
                commit=False,
            )
            await session.commit()
        logger.info(
            "conversation_merged",
            survivor_id=plan.survivor_id,
            duplicates=plan.duplicate_ids,
            moved_messages=moved,
        )
    return plans
