from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inbox_sync.models.base import Base, TimestampMixin

CONVERSATION_NATURAL_KEY = "uq_conversations_natural_key"


class Conversation(TimestampMixin, Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "integration_type",
            "contact_id",
            "integration_instance_id",
            name=CONVERSATION_NATURAL_KEY,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    integration_type: Mapped[str] = mapped_column(String(20))
    contact_id: Mapped[str] = mapped_column(String(128))
    integration_instance_id: Mapped[int] = mapped_column(
        ForeignKey("integration_instances.id", ondelete="CASCADE"), index=True
    )
    contact_name: Mapped[str | None] = mapped_column(String(255))
    contact_metadata: Mapped[dict | None] = mapped_column(JSONB, default=dict)
    status: Mapped[str] = mapped_column(String(20), default="active")

    message_count: Mapped[int] = mapped_column(Integer, default=0)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
    last_message_preview: Mapped[str | None] = mapped_column(Text)
    last_message_from: Mapped[str | None] = mapped_column(String(20))
    last_message_external_id: Mapped[str | None] = mapped_column(Text)

    sync_status: Mapped[str] = mapped_column(String(20), default="synced")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    instance = relationship("IntegrationInstance", back_populates="conversations")
    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
