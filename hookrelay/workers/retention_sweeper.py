"""
Retention sweeper - enforces each webhook's retention policy.
Runs every RETENTION_SWEEP_INTERVAL_SECONDS (default hourly).

Per cycle:
- active webhooks past expires_at -> status "expired"
- events older than retention.keep_days -> deleted
- events beyond the newest retention.max_requests -> deleted
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.utils.heartbeat import record_heartbeat

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 500


async def run_retention_sweeper():
    """Main sweeper loop. Runs until cancelled."""
    from hookrelay.config import get_settings
    interval = get_settings().retention_sweep_interval_seconds
    logger.info("Retention sweeper started (interval=%ds)", interval)

    while True:
        try:
            result = await sweep_cycle()
            if result["deleted"] or result["expired"]:
                logger.info(
                    "Retention sweep: deleted %d events, expired %d webhooks",
                    result["deleted"], result["expired"],
                )
        except Exception as e:
            logger.error("Retention sweeper error: %s", str(e), exc_info=True)

        await record_heartbeat("retention_sweeper", ttl_seconds=interval * 2)
        await asyncio.sleep(interval)


async def sweep_cycle(now: datetime = None) -> dict:
    """One pass over every webhook. Returns counts of deleted events and expired webhooks."""
    from hookrelay.database import async_session_factory
    from hookrelay.models.webhook import Webhook

    now = now or datetime.now(timezone.utc)
    deleted = 0

    async with async_session_factory() as db:
        expired = await expire_webhooks(db, now)

        result = await db.execute(select(Webhook.id, Webhook.retention))
        for webhook_id, retention in result.all():
            try:
                deleted += await prune_webhook_events(db, webhook_id, retention or {}, now)
            except Exception as e:
                logger.error(
                    "Retention prune failed for webhook %s: %s",
                    str(webhook_id)[:8], str(e), exc_info=True,
                )
                await db.rollback()
                continue
            await db.commit()

        await db.commit()

    return {"deleted": deleted, "expired": expired}


async def expire_webhooks(db: AsyncSession, now: datetime) -> int:
    from hookrelay.models.webhook import Webhook

    result = await db.execute(
        update(Webhook)
        .where(
            Webhook.status == "active",
            Webhook.expires_at.is_not(None),
            Webhook.expires_at < now,
        )
        .values(status="expired")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def prune_webhook_events(
    db: AsyncSession, webhook_id: uuid.UUID, retention: dict, now: datetime,
) -> int:
    from hookrelay.models.webhook_event import WebhookEvent

    deleted = 0
    keep_days = retention.get("keep_days")
    if keep_days:
        cutoff = now - timedelta(days=int(keep_days))
        result = await db.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.webhook_id == webhook_id,
                WebhookEvent.created_at < cutoff,
            )
        )
        deleted += await _delete_events(db, [row[0] for row in result.all()])

    max_requests = retention.get("max_requests")
    if max_requests:
        result = await db.execute(
            select(WebhookEvent.id)
            .where(WebhookEvent.webhook_id == webhook_id)
            .order_by(WebhookEvent.created_at.desc())
            .offset(int(max_requests))
        )
        deleted += await _delete_events(db, [row[0] for row in result.all()])

    return deleted


async def _delete_events(db: AsyncSession, event_ids: list[uuid.UUID]) -> int:
    from hookrelay.models.webhook_event import WebhookEvent

    deleted = 0
    for start in range(0, len(event_ids), DELETE_BATCH_SIZE):
        batch = event_ids[start:start + DELETE_BATCH_SIZE]
        # Surviving replays keep their record, just not the link
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.original_request_id.in_(batch))
            .values(original_request_id=None)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.id.in_(batch))
            .execution_options(synchronize_session=False)
        )
        deleted += result.rowcount or 0
    return deleted
