"""
Forwarding dispatcher - delivers an event to its destination(s).

Target types:
- url: the configured literal URL
- tunnel: http://<tunnel_forward_host>:<local_port><inbound path>, tunnel must be active
- multiple: every enabled named destination, concurrently and independently

A destination call counts as successful once any HTTP response comes back,
4xx/5xx included (the status code is recorded). Only network errors,
timeouts and unresolvable targets are failures. In fan-out mode the event
succeeds only if every attempted destination did.

One attempt per event, no retries. Exactly one outcome write per attempt,
followed by a fire-and-forget notification.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import get_settings
from hookrelay.models.tunnel import Tunnel
from hookrelay.models.webhook import Webhook
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.services.event_store import record_forward_outcome
from hookrelay.services.notifications import dispatch_notifications

logger = logging.getLogger(__name__)

# Not forwarded: recomputed by httpx for the new connection
HOP_BY_HOP_HEADERS = {
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "accept-encoding",
    "upgrade",
    "proxy-connection",
    "te",
    "trailer",
}
MAX_RESPONSE_BODY_CHARS = 65536

_UNSET = object()


class ForwardingError(Exception):
    """A destination could not be resolved to a URL."""


def strip_webhook_prefix(event_url: str, public_id: str) -> str:
    """Inbound path without the query string and the /webhook/<id> mount."""
    prefix = f"{get_settings().webhook_path_prefix.rstrip('/')}/{public_id}"
    path = (event_url or "").split("?", 1)[0]
    if path.startswith(prefix):
        path = path[len(prefix):]
    return path or "/"


def build_forward_headers(headers: Optional[dict], content_type: Optional[str] = None) -> dict:
    forward = {
        str(k): str(v) for k, v in (headers or {}).items()
        if str(k).lower() not in HOP_BY_HOP_HEADERS
    }
    if content_type:
        forward = {k: v for k, v in forward.items() if k.lower() != "content-type"}
        forward["content-type"] = content_type
    return forward


def encode_body(
    body: Any,
    raw_body: Optional[str],
    transformed: bool,
    raw_bytes: Optional[bytes] = None,
) -> tuple[Optional[bytes], Optional[str]]:
    """
    Bytes to send and a content-type override. Untransformed events go out
    exactly as received so downstream signature checks still pass.
    """
    if not transformed:
        if raw_bytes:
            return raw_bytes, None
        if raw_body:
            return raw_body.encode("utf-8"), None
        if body is None:
            return None, None
    if body is None:
        return None, None
    if isinstance(body, (dict, list, int, float, bool)):
        return json.dumps(body).encode("utf-8"), "application/json"
    if isinstance(body, bytes):
        return body, None
    return str(body).encode("utf-8"), None


def _parse_response_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    text = response.text
    if len(text) > MAX_RESPONSE_BODY_CHARS:
        return text[:MAX_RESPONSE_BODY_CHARS]
    return text


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: dict,
    content: Optional[bytes],
    timeout_ms: int,
) -> dict:
    """
    One outbound call bounded by timeout_ms end to end.
    Returns a result dict; never raises for network problems.
    """
    started = time.monotonic()
    timeout_s = timeout_ms / 1000.0
    try:
        response = await asyncio.wait_for(
            client.request(method, url, headers=headers, content=content, timeout=timeout_s),
            timeout=timeout_s,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        return {
            "success": False,
            "error": f"timeout of {timeout_ms}ms exceeded",
            "duration_ms": _elapsed_ms(started),
        }
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        # ValueError covers malformed URLs stored before validation existed
        return {
            "success": False,
            "error": str(e) or e.__class__.__name__,
            "duration_ms": _elapsed_ms(started),
        }

    return {
        "success": True,
        "status_code": response.status_code,
        "response_headers": dict(response.headers),
        "response_body": _parse_response_body(response),
        "duration_ms": _elapsed_ms(started),
    }


async def resolve_tunnel_url(
    db: AsyncSession, tunnel_id: Any, event_url: str, public_id: str,
) -> str:
    tunnel = None
    if tunnel_id:
        try:
            tunnel = await db.get(Tunnel, uuid.UUID(str(tunnel_id)))
        except ValueError:
            tunnel = None
    if tunnel is None or tunnel.status != "active":
        raise ForwardingError("Tunnel not active or not found")

    host = get_settings().tunnel_forward_host
    return f"http://{host}:{tunnel.local_port}{strip_webhook_prefix(event_url, public_id)}"


async def resolve_target(
    db: AsyncSession, target: dict, event: WebhookEvent, webhook: Webhook,
) -> str:
    """target is either the forwarding config or one named destination."""
    kind = target.get("type") or target.get("target_type")
    if kind == "tunnel":
        return await resolve_tunnel_url(db, target.get("tunnel_id"), event.url, webhook.webhook_id)
    if kind == "url":
        url = target.get("url") or target.get("target_url")
        if not url:
            raise ForwardingError("No target URL configured")
        return url
    raise ForwardingError(f"Unsupported target type: {kind}")


async def _forward_single(
    db: AsyncSession,
    client: httpx.AsyncClient,
    webhook: Webhook,
    event: WebhookEvent,
    headers: dict,
    content: Optional[bytes],
    timeout_ms: int,
) -> dict:
    started = time.monotonic()
    try:
        target_url = await resolve_target(db, webhook.forwarding or {}, event, webhook)
    except ForwardingError as e:
        return {"success": False, "target_url": None, "error": str(e), "duration_ms": _elapsed_ms(started)}

    result = await send_request(client, event.method, target_url, headers, content, timeout_ms)
    return {**result, "target_url": target_url}


async def _send_to_destination(
    client: httpx.AsyncClient,
    event: WebhookEvent,
    name: Optional[str],
    target_url: str,
    headers: dict,
    content: Optional[bytes],
    timeout_ms: int,
) -> dict:
    result = await send_request(client, event.method, target_url, headers, content, timeout_ms)
    entry = {
        "name": name,
        "target_url": target_url,
        "success": result["success"],
        "duration_ms": result["duration_ms"],
    }
    if result["success"]:
        entry["status_code"] = result["status_code"]
    else:
        entry["error"] = result["error"]
    return entry


def select_destinations(destinations: Optional[list[dict]], names: Optional[list[str]]) -> list[dict]:
    selected = [d for d in (destinations or []) if d.get("enabled", True)]
    if names:
        wanted = set(names)
        selected = [d for d in selected if d.get("name") in wanted]
    return selected


async def _forward_multiple(
    db: AsyncSession,
    client: httpx.AsyncClient,
    webhook: Webhook,
    event: WebhookEvent,
    names: Optional[list[str]],
    headers: dict,
    content: Optional[bytes],
    timeout_ms: int,
) -> dict:
    started = time.monotonic()
    destinations = select_destinations((webhook.forwarding or {}).get("destinations"), names)
    if not destinations:
        return {
            "success": False,
            "destinations": [],
            "error": "No enabled destinations",
            "duration_ms": _elapsed_ms(started),
        }

    # Tunnel lookups share the session, so targets resolve one at a time;
    # only the outbound calls run concurrently.
    results: list[Optional[dict]] = [None] * len(destinations)
    sends = []
    for index, destination in enumerate(destinations):
        name = destination.get("name")
        resolve_started = time.monotonic()
        try:
            target_url = await resolve_target(db, destination, event, webhook)
        except ForwardingError as e:
            results[index] = {
                "name": name,
                "target_url": None,
                "success": False,
                "error": str(e),
                "duration_ms": _elapsed_ms(resolve_started),
            }
            continue
        sends.append((
            index,
            _send_to_destination(client, event, name, target_url, headers, content, timeout_ms),
        ))

    if sends:
        sent = await asyncio.gather(*(coro for _, coro in sends))
        for (index, _), entry in zip(sends, sent):
            results[index] = entry

    failed = [r for r in results if not r["success"]]
    outcome = {
        "success": not failed,
        "destinations": results,
        "duration_ms": _elapsed_ms(started),
    }
    if failed:
        outcome["error"] = f"{len(failed)} of {len(results)} destinations failed"
    return outcome


async def forward_event(
    db: AsyncSession,
    webhook: Webhook,
    event: WebhookEvent,
    destinations: Optional[list[str]] = None,
    body: Any = _UNSET,
    rule: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[dict]:
    """
    Forward one event according to the webhook's forwarding config.

    destinations restricts fan-out to those names (from a matched rule).
    body overrides the stored body (the transformer's output).
    Returns the recorded outcome, or None when forwarding is off.
    """
    forwarding = webhook.forwarding or {}
    target_type = forwarding.get("target_type") or "none"
    if not forwarding.get("enabled") or target_type == "none":
        logger.debug("Forwarding not configured for webhook %s", webhook.webhook_id[:8])
        return None

    timeout_ms = int(forwarding.get("timeout") or get_settings().default_forward_timeout_ms)
    transformed = body is not _UNSET
    payload = body if transformed else event.body
    content, content_type = encode_body(payload, event.raw_body, transformed, event.raw_bytes)
    headers = build_forward_headers(event.headers, content_type)

    if destinations and target_type != "multiple":
        logger.info(
            "Rule destinations ignored for single-target webhook %s", webhook.webhook_id[:8],
        )

    started = time.monotonic()
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(follow_redirects=False)
    try:
        if target_type == "multiple":
            outcome = await _forward_multiple(
                db, client, webhook, event, destinations, headers, content, timeout_ms,
            )
        else:
            outcome = await _forward_single(
                db, client, webhook, event, headers, content, timeout_ms,
            )
    finally:
        if own_client:
            await client.aclose()

    outcome["duration_ms"] = _elapsed_ms(started)
    if rule:
        outcome["rule"] = rule
    if transformed:
        outcome["transformed"] = True

    await record_forward_outcome(db, webhook, event, outcome)

    lifecycle = "forwarded" if outcome["success"] else "failed"
    log = logger.info if outcome["success"] else logger.warning
    log(
        "Webhook %s request %s %s (%dms)%s",
        webhook.webhook_id[:8], str(event.id)[:8], lifecycle, outcome["duration_ms"],
        f": {outcome['error']}" if outcome.get("error") else "",
        extra={
            "webhook_id": webhook.webhook_id,
            "request_id": str(event.id),
            "target_url": outcome.get("target_url"),
            "status_code": outcome.get("status_code"),
            "duration_ms": outcome["duration_ms"],
        },
    )

    dispatch_notifications(webhook, event, lifecycle)
    return event.forwarding
