"""sync run history

Revision ID: 0002_sync_runs
Revises: 0001_init
Create Date: 2026-10-08 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0002_sync_runs"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "integration_instance_id",
            sa.Integer(),
            sa.ForeignKey("integration_instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("fetched_count", sa.Integer()),
        sa.Column("processed_messages", sa.Integer()),
        sa.Column("processed_conversations", sa.Integer()),
        sa.Column("error_count", sa.Integer()),
        sa.Column("errors", postgresql.JSONB()),
        sa.Column("error_message", sa.Text()),
    )
    op.create_index(
        "ix_sync_runs_integration_instance_id", "sync_runs", ["integration_instance_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_sync_runs_integration_instance_id", table_name="sync_runs")
    op.drop_table("sync_runs")
