"""
Event store - persistence helpers for webhooks and their events.

Counters are bumped with single UPDATE ... SET x = x + 1 statements so
concurrent events never lose each other's increments to a read-modify-write
in Python. They are still best-effort: a crash between the event write and
the counter bump leaves them one short.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.utils.logging import get_correlation_id
from hookrelay.utils.webhook_signatures import compute_payload_hash

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("total_requests", "successful_forwards", "failed_forwards")


async def find_active_webhook(db: AsyncSession, public_id: str) -> Optional[Webhook]:
    result = await db.execute(
        select(Webhook).where(Webhook.webhook_id == public_id, Webhook.status == "active")
    )
    return result.scalar_one_or_none()


async def get_owned_webhook(
    db: AsyncSession, webhook_id: uuid.UUID, user_id: uuid.UUID,
) -> Optional[Webhook]:
    result = await db.execute(
        select(Webhook).where(Webhook.id == webhook_id, Webhook.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_owned_event(
    db: AsyncSession, webhook: Webhook, event_id: uuid.UUID,
) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(
            WebhookEvent.id == event_id,
            WebhookEvent.webhook_id == webhook.id,
            WebhookEvent.user_id == webhook.user_id,
        )
    )
    return result.scalar_one_or_none()


async def increment_counter(db: AsyncSession, webhook_id: uuid.UUID, field: str) -> None:
    if field not in COUNTER_FIELDS:
        raise ValueError(f"Unknown counter: {field}")
    column = getattr(Webhook, field)
    values: dict[str, Any] = {field: column + 1}
    if field == "total_requests":
        values["last_request_at"] = datetime.now(timezone.utc)
    await db.execute(
        update(Webhook)
        .where(Webhook.id == webhook_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def record_event(
    db: AsyncSession,
    webhook: Webhook,
    *,
    method: str,
    url: str,
    headers: dict,
    body: Any,
    raw_body: Optional[str],
    query: dict,
    content_type: Optional[str] = None,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    signature: Optional[dict] = None,
    raw_bytes: Optional[bytes] = None,
) -> WebhookEvent:
    """Write the immutable request snapshot with status 'received'."""
    event = WebhookEvent(
        webhook_id=webhook.id,
        user_id=webhook.user_id,
        method=method.upper(),
        url=url,
        headers=dict(headers or {}),
        body=body,
        raw_body=raw_body,
        raw_bytes=raw_bytes,
        query=dict(query or {}),
        content_type=content_type,
        client_ip=client_ip,
        user_agent=user_agent,
        payload_hash=compute_payload_hash(raw_bytes if raw_bytes is not None else raw_body),
        signature=signature,
        status="received",
        forwarding={"attempted": False, "success": False},
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    await db.flush()
    await increment_counter(db, webhook.id, "total_requests")
    return event


async def record_forward_outcome(
    db: AsyncSession,
    webhook: Webhook,
    event: WebhookEvent,
    outcome: dict,
) -> None:
    """Single write of one forward attempt's outcome, plus the matching counter."""
    success = bool(outcome.get("success"))
    event.forwarding = {**outcome, "attempted": True, "success": success}
    event.status = "forwarded" if success else "failed"
    await db.flush()
    await increment_counter(
        db, webhook.id, "successful_forwards" if success else "failed_forwards",
    )


async def record_skipped(db: AsyncSession, event: WebhookEvent, rule: Optional[str]) -> None:
    """A skip rule matched: no attempt, but keep why on the record."""
    event.forwarding = {
        "attempted": False,
        "success": False,
        "skipped_by_rule": True,
        "rule": rule,
    }
    await db.flush()


async def list_events(
    db: AsyncSession,
    webhook: Webhook,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookEvent], int]:
    conditions = [WebhookEvent.webhook_id == webhook.id]
    if status:
        conditions.append(WebhookEvent.status == status)

    total = await db.scalar(select(func.count(WebhookEvent.id)).where(*conditions))
    result = await db.execute(
        select(WebhookEvent)
        .where(*conditions)
        .order_by(WebhookEvent.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def count_events_by_status(db: AsyncSession, webhook: Webhook) -> dict[str, int]:
    result = await db.execute(
        select(WebhookEvent.status, func.count(WebhookEvent.id))
        .where(WebhookEvent.webhook_id == webhook.id)
        .group_by(WebhookEvent.status)
    )
    return {status: count for status, count in result.all()}


async def delete_webhook_events(db: AsyncSession, webhook: Webhook) -> int:
    # Drop replay links first so the self-referencing FK never blocks the delete
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.webhook_id == webhook.id)
        .values(original_request_id=None)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        delete(WebhookEvent)
        .where(WebhookEvent.webhook_id == webhook.id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
