"""Initial schema: tunnels, webhooks, webhook_events

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tunnels",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False, unique=True),
        sa.Column("local_port", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="connecting"),
        sa.Column("public_url", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_tunnels_user_id", "tunnels", ["user_id"])

    op.create_table(
        "webhooks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("webhook_id", sa.String(64), nullable=False, unique=True),
        sa.Column("webhook_url", sa.String(512), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("forwarding", postgresql.JSONB, nullable=False),
        sa.Column("security", postgresql.JSONB, nullable=False),
        sa.Column("filters", postgresql.JSONB, nullable=False),
        sa.Column("rules", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("transformation", postgresql.JSONB, nullable=False),
        sa.Column("notifications", postgresql.JSONB, nullable=False),
        sa.Column("retention", postgresql.JSONB, nullable=False),
        sa.Column("total_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("successful_forwards", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_forwards", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_request_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhooks_user_status", "webhooks", ["user_id", "status"])
    op.create_index("ix_webhooks_expires_at", "webhooks", ["expires_at"])

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "webhook_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("headers", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("body", postgresql.JSONB, nullable=True),
        sa.Column("raw_body", sa.Text, nullable=True),
        sa.Column("raw_bytes", sa.LargeBinary, nullable=True),
        sa.Column("query", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("content_type", sa.String(255), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("payload_hash", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("forwarding", postgresql.JSONB, nullable=False),
        sa.Column("signature", postgresql.JSONB, nullable=True),
        sa.Column("is_replay", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "original_request_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("replay_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tags", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_webhook_created", "webhook_events", ["webhook_id", "created_at"])
    op.create_index("ix_webhook_events_user_created", "webhook_events", ["user_id", "created_at"])
    op.create_index("ix_webhook_events_status_created", "webhook_events", ["status", "created_at"])
    op.create_index("ix_webhook_events_original_request_id", "webhook_events", ["original_request_id"])


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("webhooks")
    op.drop_table("tunnels")
