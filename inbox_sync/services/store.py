from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from inbox_sync.schemas.messages import CanonicalMessage, ConversationKey, InstanceDescriptor
from inbox_sync.schemas.rag import RagMessageFilter
from inbox_sync.schemas.sync import SyncReport

PREVIEW_LENGTH = 100

# Receipt order; a status update never moves a message backwards.
STATUS_RANK = {
    "pending": 0,
    "failed": 1,
    "sent": 1,
    "delivered": 2,
    "read": 3,
    "deleted": 4,
}


def status_rank(status: str | None) -> int:
    return STATUS_RANK.get(status or "", 0)


@dataclass
class ConversationFields:
    """Column values written by a conversation upsert.

    ``contact_name`` always carries a usable name; it only replaces an
    existing one when ``contact_name_authoritative`` is set (it came from
    the contact's own push name rather than a fallback).
    """

    contact_name: str
    contact_name_authoritative: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    sync_status: str = "synced"
    synced_at: datetime | None = None


@dataclass
class ConversationRow:
    id: int
    key: ConversationKey
    contact_name: str | None = None
    contact_metadata: dict[str, Any] = field(default_factory=dict)
    status: str = "active"
    message_count: int = 0
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    last_message_from: str | None = None
    last_message_external_id: str | None = None
    created_at: datetime | None = None


def message_preview(message: CanonicalMessage) -> str:
    return message.content[:PREVIEW_LENGTH]


def is_newer(
    candidate: CanonicalMessage,
    current_at: datetime | None,
    current_external_id: str | None,
) -> bool:
    """Latest-message guard; equal keys count as newer so replays refresh the preview."""
    if current_at is None:
        return True
    return candidate.sort_key() >= (current_at, current_external_id or "")


class ConversationStore(ABC):
    """Persistence seam used by the sync engine and the webhook intake.

    Every method is a self-contained unit of work; implementations must
    not cache conversation or message state between calls.
    """

    # False means the store cannot upsert on the composite natural key
    # atomically and conversation creation must be serialized in-process.
    supports_atomic_upsert: bool = True

    @abstractmethod
    async def get_instance(self, ref: int | str) -> InstanceDescriptor | None:
        """Look an instance up by surrogate id or by gateway instance key."""

    @abstractmethod
    async def list_instances(self) -> list[InstanceDescriptor]: ...

    @abstractmethod
    async def upsert_instance(
        self,
        account_id: str,
        instance_key: str,
        integration_type: str,
        display_name: str | None = None,
    ) -> InstanceDescriptor: ...

    @abstractmethod
    async def upsert_conversation(
        self, key: ConversationKey, fields: ConversationFields
    ) -> ConversationRow:
        """Insert-or-update keyed on the natural tuple in one atomic step."""

    @abstractmethod
    async def upsert_messages(
        self, conversation_id: int, messages: list[CanonicalMessage]
    ) -> list[str]:
        """Upsert keyed on external id; returns the external ids that were newly inserted.

        Raises ConflictResolutionError when the store rejects the batch
        for any reason other than the external id conflict.
        """

    @abstractmethod
    async def apply_message_stats(
        self,
        conversation_id: int,
        latest: CanonicalMessage | None,
        set_count: int | None = None,
        add_count: int = 0,
    ) -> None:
        """Update message_count and the guarded last_message_* columns in one statement."""

    @abstractmethod
    async def mark_message_deleted(
        self, external_id: str, deleted_at: datetime
    ) -> int | None:
        """Soft-delete; returns the owning conversation id, or None when unknown."""

    @abstractmethod
    async def update_message_status(self, external_id: str, status: str) -> bool:
        """Apply a receipt unless the message is deleted or already further along."""

    @abstractmethod
    async def refresh_last_message(self, conversation_id: int) -> None:
        """Recompute last_message_* from the latest message that is not deleted."""

    @abstractmethod
    async def read_messages_for_rag(
        self, filters: RagMessageFilter
    ) -> list[CanonicalMessage]: ...

    @abstractmethod
    async def start_sync_run(self, instance_id: int) -> int | None: ...

    @abstractmethod
    async def finish_sync_run(self, run_id: int | None, report: SyncReport) -> None: ...

    @abstractmethod
    async def log_event(
        self,
        level: str,
        event_type: str,
        message: str | None = None,
        data: dict | None = None,
        instance_id: int | None = None,
    ) -> None: ...
