"""
Webhook model - an owner-configured ingestion endpoint plus its routing rules.
Nested configuration (forwarding, security, rules, ...) is stored as JSONB and
validated by hookrelay.schemas.webhook_config before it is written.
"""
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.database import Base
from hookrelay.schemas.webhook_config import (
    FilterConfig,
    ForwardingConfig,
    NotificationConfig,
    RetentionConfig,
    SecurityConfig,
    TransformationConfig,
    dump_config,
)

WEBHOOK_STATUSES = ("active", "paused", "expired")


def generate_webhook_id() -> str:
    """Public token used in the ingestion URL (32 hex chars)."""
    return secrets.token_hex(16)


class Webhook(Base):
    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    webhook_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=generate_webhook_id
    )
    webhook_url: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, paused, expired

    # Configuration
    forwarding: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(ForwardingConfig())
    )
    security: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(SecurityConfig())
    )
    filters: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(FilterConfig())
    )
    rules: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    transformation: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(TransformationConfig())
    )
    notifications: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(NotificationConfig())
    )
    retention: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=lambda: dump_config(RetentionConfig())
    )

    # Running counters - best-effort under concurrent events, see services/event_store.py
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_forwards: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_forwards: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_request_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_webhooks_user_status", "user_id", "status"),
        Index("ix_webhooks_expires_at", "expires_at"),
    )

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"<Webhook {self.webhook_id[:8]} status={self.status}>"
