"""
Webhook event - one inbound call, recorded before any forwarding happens.
The request snapshot is never mutated after creation; replay and resend
create a new linked row instead.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Index, LargeBinary
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.database import Base

EVENT_STATUSES = ("received", "forwarded", "failed", "replayed")


def empty_forwarding() -> dict:
    return {"attempted": False, "success": False}


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    webhook_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhooks.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Request snapshot
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    headers: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    body: Mapped[Optional[dict]] = mapped_column(JSONB)  # any JSON value
    raw_body: Mapped[Optional[str]] = mapped_column(Text)  # UTF-8 view for display
    raw_bytes: Mapped[Optional[bytes]] = mapped_column(LargeBinary)  # exact inbound bytes
    query: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    content_type: Mapped[Optional[str]] = mapped_column(String(255))
    client_ip: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    payload_hash: Mapped[Optional[str]] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="received"
    )  # received, forwarded, failed, replayed

    # Outcome of the single forward attempt (see services/forwarding.py)
    forwarding: Mapped[dict] = mapped_column(JSONB, nullable=False, default=empty_forwarding)
    # {"provided": str, "valid": bool, "algorithm": str}
    signature: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Replay linkage
    is_replay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="SET NULL")
    )
    replay_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_webhook_events_webhook_created", "webhook_id", "created_at"),
        Index("ix_webhook_events_user_created", "user_id", "created_at"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
        Index("ix_webhook_events_original_request_id", "original_request_id"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.method} status={self.status}>"
