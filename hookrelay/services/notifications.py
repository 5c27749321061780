"""
Notification dispatcher - side-channel alerts on event lifecycle changes.

Channels:
1. Slack incoming webhook - {"text": ...}
2. Discord webhook - {"content": ...}
3. Generic webhook - structured JSON

Owners subscribe each channel to any of received/forwarded/failed.
Sending is fire-and-forget on the background pool; a failing channel is
logged and never touches the event's stored status.
"""
import asyncio
import logging
from typing import Optional

import httpx

from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.services.task_dispatch import submit_background

logger = logging.getLogger(__name__)

LIFECYCLE_EVENTS = ("received", "forwarded", "failed")
CHANNELS = ("slack", "discord", "webhook")

_EMOJI = {"received": "\U0001f4e5", "forwarded": "✅", "failed": "❌"}


def build_summary(webhook: Webhook, event: WebhookEvent, lifecycle: str) -> dict:
    """Plain snapshot of what the channels need, taken before the task is scheduled."""
    forwarding = event.forwarding or {}
    return {
        "lifecycle": lifecycle,
        "webhook": {
            "id": str(webhook.id),
            "webhook_id": webhook.webhook_id,
            "name": webhook.name,
        },
        "request": {
            "id": str(event.id),
            "method": event.method,
            "url": event.url,
            "status": event.status,
            "client_ip": event.client_ip,
            "is_replay": event.is_replay,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        },
        "forwarding": {
            "attempted": forwarding.get("attempted", False),
            "success": forwarding.get("success", False),
            "target_url": forwarding.get("target_url"),
            "status_code": forwarding.get("status_code"),
            "duration_ms": forwarding.get("duration_ms"),
            "error": forwarding.get("error"),
        },
    }


def _headline(summary: dict) -> str:
    lifecycle = summary["lifecycle"]
    request = summary["request"]
    return (
        f"{_EMOJI.get(lifecycle, '')} Webhook *{summary['webhook']['name']}* "
        f"{lifecycle}: {request['method']} {request['url']}"
    ).strip()


def _detail_lines(summary: dict) -> list[str]:
    forwarding = summary["forwarding"]
    lines = [f"request_id: {summary['request']['id']}"]
    if forwarding.get("target_url"):
        lines.append(f"target: {forwarding['target_url']}")
    if forwarding.get("status_code") is not None:
        lines.append(f"status_code: {forwarding['status_code']}")
    if forwarding.get("duration_ms") is not None:
        lines.append(f"duration_ms: {forwarding['duration_ms']}")
    if forwarding.get("error"):
        lines.append(f"error: {forwarding['error']}")
    return lines


def format_slack(summary: dict) -> dict:
    text = _headline(summary)
    for line in _detail_lines(summary):
        text += f"\n`{line}`"
    return {"text": text}


def format_discord(summary: dict) -> dict:
    content = _headline(summary).replace("*", "**", 2)
    for line in _detail_lines(summary):
        content += f"\n`{line}`"
    return {"content": content[:2000]}  # Discord message limit


def format_generic(summary: dict) -> dict:
    return {"event": f"webhook.{summary['lifecycle']}", **summary}


FORMATTERS = {
    "slack": format_slack,
    "discord": format_discord,
    "webhook": format_generic,
}


def subscribed_channels(config: Optional[dict], lifecycle: str) -> list[tuple[str, str]]:
    """(channel, url) pairs that are enabled and subscribed to lifecycle."""
    channels = []
    for name in CHANNELS:
        channel = (config or {}).get(name) or {}
        if not channel.get("enabled") or not channel.get("url"):
            continue
        if lifecycle not in (channel.get("events") or []):
            continue
        channels.append((name, channel["url"]))
    return channels


async def _send_channel(
    client: httpx.AsyncClient, channel: str, url: str, summary: dict,
) -> bool:
    try:
        response = await client.post(url, json=FORMATTERS[channel](summary))
        if response.status_code >= 400:
            logger.warning(
                "Notification to %s returned %d", channel, response.status_code,
                extra={"channel": channel, "status_code": response.status_code},
            )
            return False
        return True
    except Exception as e:
        logger.warning(
            "Failed to send %s notification: %s", channel, str(e),
            extra={"channel": channel},
        )
        return False


async def send_notifications(
    config: Optional[dict],
    summary: dict,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[str, bool]:
    """Send to every subscribed channel. Returns {channel: delivered}. Never raises."""
    channels = subscribed_channels(config, summary["lifecycle"])
    if not channels:
        return {}

    try:
        if client is None:
            from hookrelay.config import get_settings
            timeout = get_settings().notification_timeout_seconds
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                results = await asyncio.gather(
                    *(_send_channel(own_client, name, url, summary) for name, url in channels)
                )
        else:
            results = await asyncio.gather(
                *(_send_channel(client, name, url, summary) for name, url in channels)
            )
    except Exception as e:
        logger.warning("Notification dispatch failed: %s", str(e))
        return {name: False for name, _ in channels}

    return {name: ok for (name, _), ok in zip(channels, results)}


def dispatch_notifications(
    webhook: Webhook, event: WebhookEvent, lifecycle: str,
) -> Optional[asyncio.Task]:
    """
    Schedule notifications for a lifecycle event and return immediately.
    Returns the background task, or None when no channel is subscribed.
    """
    try:
        config = dict(webhook.notifications or {})
        if not subscribed_channels(config, lifecycle):
            return None
        summary = build_summary(webhook, event, lifecycle)
        return submit_background(
            send_notifications(config, summary),
            name=f"notify:{lifecycle}:{summary['request']['id'][:8]}",
        )
    except Exception as e:
        logger.warning("Could not schedule %s notifications: %s", lifecycle, str(e))
        return None
