"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "integration_instances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("integration_type", sa.String(length=20), nullable=False),
        sa.Column("instance_key", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_integration_instances_account_id", "integration_instances", ["account_id"]
    )
    op.create_index(
        "ix_integration_instances_instance_key",
        "integration_instances",
        ["instance_key"],
        unique=True,
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("integration_type", sa.String(length=20), nullable=False),
        sa.Column("contact_id", sa.String(length=128), nullable=False),
        sa.Column(
            "integration_instance_id",
            sa.Integer(),
            sa.ForeignKey("integration_instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("contact_name", sa.String(length=255)),
        sa.Column(
            "contact_metadata",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", sa.String(length=20), server_default="active", nullable=False),
        sa.Column("message_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("last_message_preview", sa.Text()),
        sa.Column("last_message_from", sa.String(length=20)),
        sa.Column("last_message_external_id", sa.Text()),
        sa.Column("sync_status", sa.String(length=20), server_default="synced"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "account_id",
            "integration_type",
            "contact_id",
            "integration_instance_id",
            name="uq_conversations_natural_key",
        ),
    )
    op.create_index("ix_conversations_account_id", "conversations", ["account_id"])
    op.create_index(
        "ix_conversations_integration_instance_id",
        "conversations",
        ["integration_instance_id"],
    )
    op.create_index(
        "ix_conversations_last_message_at", "conversations", ["last_message_at"]
    )

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_message_id", sa.Text()),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=20), server_default="text", nullable=False),
        sa.Column("direction", sa.String(length=10), nullable=False),
        sa.Column("sender_type", sa.String(length=10), nullable=False),
        sa.Column("sender_name", sa.String(length=255)),
        sa.Column("sender_id", sa.String(length=128)),
        sa.Column("status", sa.String(length=20), server_default="delivered", nullable=False),
        sa.Column("external_timestamp", sa.DateTime(timezone=True)),
        sa.Column("external_metadata", postgresql.JSONB()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "external_message_id",
            name="uq_conversation_messages_external_message_id",
        ),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id",
        "conversation_messages",
        ["conversation_id"],
    )
    op.create_index(
        "ix_conversation_messages_conversation_ts",
        "conversation_messages",
        ["conversation_id", "external_timestamp"],
    )

    op.create_table(
        "app_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("level", sa.String(length=20), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("integration_instance_id", sa.Integer()),
        sa.Column("message", sa.Text()),
        sa.Column("data", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_app_logs_event_type", "app_logs", ["event_type"])
    op.create_index(
        "ix_app_logs_integration_instance_id", "app_logs", ["integration_instance_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_app_logs_integration_instance_id", table_name="app_logs")
    op.drop_index("ix_app_logs_event_type", table_name="app_logs")
    op.drop_table("app_logs")
    op.drop_index("ix_conversation_messages_conversation_ts", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_conversation_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_integration_instance_id", table_name="conversations")
    op.drop_index("ix_conversations_account_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_integration_instances_instance_key", table_name="integration_instances")
    op.drop_index("ix_integration_instances_account_id", table_name="integration_instances")
    op.drop_table("integration_instances")
