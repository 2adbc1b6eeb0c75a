"""Create message queue, processing status and dead-letter tables

Revision ID: 001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the inbound queue schema."""

    op.create_table(
        "message_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("platform", sa.String(length=20), nullable=False),
        sa.Column("sender_id", sa.String(length=100), nullable=False),
        sa.Column("recipient_id", sa.String(length=100), nullable=False),
        sa.Column(
            "message_content", postgresql.JSONB(astext_type=sa.Text()), nullable=False
        ),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status", sa.String(length=20), nullable=False, server_default="pending"
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_eligible_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_letter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.CheckConstraint(
            "platform IN ('facebook', 'instagram')", name="message_queue_platform_check"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="message_queue_status_check",
        ),
        sa.CheckConstraint("retry_count >= 0", name="message_queue_retry_count_check"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_message_queue_status_created", "message_queue", ["status", "created_at"]
    )
    op.create_index(
        "idx_message_queue_processing_lease",
        "message_queue",
        ["last_retry_at"],
        postgresql_where=sa.text("status = 'processing'"),
    )

    op.create_table(
        "message_processing_status",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("seq", sa.BigInteger(), sa.Identity(always=True), nullable=False),
        sa.Column("message_queue_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="message_processing_status_status_check",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_processing_status_message",
        "message_processing_status",
        ["message_queue_id", "created_at", "seq"],
    )

    op.create_table(
        "message_dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("message_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status", sa.String(length=20), nullable=False, server_default="failed"
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('failed', 'retrying', 'resolved')",
            name="message_dead_letters_status_check",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id", name="uq_message_dead_letters_message_id"),
    )
    op.create_index(
        "idx_dead_letters_status_failed",
        "message_dead_letters",
        ["status", "failed_at"],
    )


def downgrade() -> None:
    """Drop the inbound queue schema."""

    op.drop_index("idx_dead_letters_status_failed", table_name="message_dead_letters")
    op.drop_table("message_dead_letters")
    op.drop_index(
        "idx_processing_status_message", table_name="message_processing_status"
    )
    op.drop_table("message_processing_status")
    op.drop_index("idx_message_queue_processing_lease", table_name="message_queue")
    op.drop_index("idx_message_queue_status_created", table_name="message_queue")
    op.drop_table("message_queue")
