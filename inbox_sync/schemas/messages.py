from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field


class MessageType(str, Enum):
    text = "text"
    image = "image"
    audio = "audio"
    video = "video"
    document = "document"
    location = "location"
    contact = "contact"
    sticker = "sticker"
    unknown = "unknown"


class Direction(str, Enum):
    inbound = "inbound"
    outbound = "outbound"


class SenderType(str, Enum):
    contact = "contact"
    agent = "agent"
    bot = "bot"


class ConversationKey(NamedTuple):
    """Natural identity of one conversation; the tuple itself is the key."""

    account_id: str
    integration_type: str
    contact_id: str
    integration_instance_id: int

    def __str__(self) -> str:
        return (
            f"{self.account_id}:{self.integration_type}:"
            f"{self.contact_id}:{self.integration_instance_id}"
        )


class InstanceDescriptor(BaseModel):
    instance_id: int
    account_id: str
    instance_key: str
    integration_type: str = "whatsapp"
    display_name: str | None = None


class CanonicalMessage(BaseModel):
    external_id: str
    conversation_key: ConversationKey
    remote_id: str
    is_group: bool = False
    content: str
    message_type: MessageType
    direction: Direction
    sender_type: SenderType
    sender_display_name: str
    sender_identifier: str
    push_name: str | None = None
    variant: str | None = None
    occurred_at: datetime
    status: str = "delivered"
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    def sort_key(self) -> tuple[datetime, str]:
        return (self.occurred_at, self.external_id)
