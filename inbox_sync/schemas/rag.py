from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from inbox_sync.schemas.messages import Direction, MessageType, SenderType


class RagMessageFilter(BaseModel):
    conversation_id: int | None = None
    remote_id: str | None = None
    integration_instance_id: int | None = None
    message_types: list[MessageType] | None = None
    direction: Direction | None = None
    sender_type: SenderType | None = None
    start: datetime | None = None
    end: datetime | None = None
    text_only: bool = False
    include_deleted: bool = False
    limit: int | None = 1000
