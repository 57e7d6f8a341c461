from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inbox_sync.models.base import Base, TimestampMixin

MESSAGE_EXTERNAL_ID_KEY = "uq_conversation_messages_external_message_id"


class ConversationMessage(TimestampMixin, Base):
    __tablename__ = "conversation_messages"
    # NULLs never conflict, so manually authored rows without an external id are fine.
    __table_args__ = (
        UniqueConstraint("external_message_id", name=MESSAGE_EXTERNAL_ID_KEY),
        Index("ix_conversation_messages_conversation_ts", "conversation_id", "external_timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), index=True
    )
    external_message_id: Mapped[str | None] = mapped_column(Text)
    content: Mapped[str] = mapped_column(Text)
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    direction: Mapped[str] = mapped_column(String(10))
    sender_type: Mapped[str] = mapped_column(String(10))
    sender_name: Mapped[str | None] = mapped_column(String(255))
    sender_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(20), default="delivered")
    external_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    external_metadata: Mapped[dict | None] = mapped_column(JSONB)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
