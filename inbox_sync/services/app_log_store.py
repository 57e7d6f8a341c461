from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from inbox_sync.models.app_log import AppLog


async def log_event(
    session: AsyncSession,
    level: str,
    event_type: str,
    message: str | None = None,
    data: dict | None = None,
    commit: bool = True,
    integration_instance_id: int | None = None,
) -> None:
    log = AppLog(
        level=level,
        event_type=event_type,
        integration_instance_id=integration_instance_id,
        message=message[:2000] if message else message,
        data=data,
    )
    session.add(log)
    if commit:
        await session.commit()
