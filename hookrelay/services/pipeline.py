"""
Post-ack processing for one event: rule engine -> transformer -> dispatcher.

Runs on the background pool with its own database session. The event row is
already committed (status "received") by the time this starts.
"""
import logging
import uuid
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.database import async_session_factory
from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.services.conditions import build_request_view
from hookrelay.services.event_store import record_skipped
from hookrelay.services.forwarding import forward_event
from hookrelay.services.rules import evaluate_rules
from hookrelay.services.task_dispatch import submit_background
from hookrelay.services.transformer import transform_payload

logger = logging.getLogger(__name__)


def forwarding_enabled(webhook: Webhook) -> bool:
    forwarding = webhook.forwarding or {}
    return bool(forwarding.get("enabled")) and (forwarding.get("target_type") or "none") != "none"


async def run_pipeline(
    db: AsyncSession,
    webhook: Webhook,
    event: WebhookEvent,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[dict]:
    """
    Decide, transform and forward. Returns the forwarding outcome, or None
    when forwarding is off or a skip rule matched.
    """
    if not forwarding_enabled(webhook):
        return None

    view = build_request_view(event.body, event.headers, event.method, event.query)
    decision = evaluate_rules(webhook.rules, view)
    if not decision.forward:
        await record_skipped(db, event, decision.rule)
        return None

    transformation = webhook.transformation or {}
    kwargs = {}
    if transformation.get("enabled") or decision.transform:
        kwargs["body"] = transform_payload(transformation, event.body)

    return await forward_event(
        db,
        webhook,
        event,
        destinations=decision.destinations,
        rule=decision.rule,
        client=client,
        **kwargs,
    )


async def process_event(event_id: uuid.UUID, client: Optional[httpx.AsyncClient] = None) -> None:
    """Background entry point for a freshly received event."""
    async with async_session_factory() as db:
        event = await db.get(WebhookEvent, event_id)
        if event is None:
            logger.warning("Event %s vanished before processing", str(event_id)[:8])
            return
        webhook = await db.get(Webhook, event.webhook_id)
        if webhook is None:
            logger.warning("Webhook for event %s was deleted before processing", str(event_id)[:8])
            return

        try:
            await run_pipeline(db, webhook, event, client=client)
            await db.commit()
        except Exception:
            await db.rollback()
            raise


def schedule_processing(event_id: uuid.UUID):
    """Fire-and-forget: the inbound request does not wait for forwarding."""
    return submit_background(process_event(event_id), name=f"forward:{str(event_id)[:8]}")
