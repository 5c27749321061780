"""
Replay and resend - re-deliver a stored event as a new linked record.

The source event is never modified. The copy is stored with status
"replayed"; if forwarding is enabled it goes through the same rule ->
transform -> dispatch pipeline as a live event, awaited so the caller gets
the outcome.
"""
import json
import logging
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.services.pipeline import run_pipeline
from hookrelay.utils.logging import get_correlation_id
from hookrelay.utils.webhook_signatures import compute_payload_hash

logger = logging.getLogger(__name__)


def _serialize_body(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, str):
        return body
    return json.dumps(body)


async def create_replay(
    db: AsyncSession,
    event: WebhookEvent,
    overrides: Optional[dict] = None,
) -> WebhookEvent:
    """
    New record copying event's request snapshot, with optional
    headers/body/method overrides (only keys present in overrides apply).
    """
    overrides = overrides or {}
    method = (overrides.get("method") or event.method).upper()
    headers = dict(overrides["headers"]) if overrides.get("headers") is not None else dict(event.headers or {})

    if "body" in overrides:
        body = overrides["body"]
        raw_body = _serialize_body(body)
        raw_bytes = None
    else:
        body = event.body
        raw_body = event.raw_body
        raw_bytes = event.raw_bytes

    replay = WebhookEvent(
        webhook_id=event.webhook_id,
        user_id=event.user_id,
        method=method,
        url=event.url,
        headers=headers,
        body=body,
        raw_body=raw_body,
        raw_bytes=raw_bytes,
        query=dict(event.query or {}),
        content_type=event.content_type,
        client_ip=event.client_ip,
        user_agent=event.user_agent,
        payload_hash=compute_payload_hash(raw_bytes if raw_bytes is not None else raw_body),
        status="replayed",
        forwarding={"attempted": False, "success": False},
        is_replay=True,
        original_request_id=event.id,
        replay_count=(event.replay_count or 0) + 1,
        correlation_id=get_correlation_id(),
    )
    db.add(replay)
    await db.flush()
    return replay


async def replay_event(
    db: AsyncSession,
    webhook: Webhook,
    event: WebhookEvent,
    client: Optional[httpx.AsyncClient] = None,
) -> WebhookEvent:
    replay = await create_replay(db, event)
    logger.info(
        "Replaying request %s as %s (replay_count=%d)",
        str(event.id)[:8], str(replay.id)[:8], replay.replay_count,
        extra={"webhook_id": webhook.webhook_id, "request_id": str(replay.id)},
    )
    await run_pipeline(db, webhook, replay, client=client)
    return replay


async def resend_event(
    db: AsyncSession,
    webhook: Webhook,
    event: WebhookEvent,
    overrides: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> WebhookEvent:
    replay = await create_replay(db, event, overrides)
    logger.info(
        "Resending request %s as %s with overrides=%s",
        str(event.id)[:8], str(replay.id)[:8], ",".join(sorted(overrides or {})) or "none",
        extra={"webhook_id": webhook.webhook_id, "request_id": str(replay.id)},
    )
    await run_pipeline(db, webhook, replay, client=client)
    return replay
