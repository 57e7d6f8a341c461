from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inbox_sync.models.base import Base, TimestampMixin


class IntegrationInstance(TimestampMixin, Base):
    __tablename__ = "integration_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    integration_type: Mapped[str] = mapped_column(String(20), default="whatsapp")
    instance_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255))

    conversations = relationship(
        "Conversation",
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
