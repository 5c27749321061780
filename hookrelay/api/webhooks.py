"""
Webhook management endpoints (Bearer auth, owner-scoped).

- CRUD for webhooks
- Stats and paginated event history
- Replay / resend of stored events
- Signature preview for integration debugging
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.api.auth import get_current_user_id
from hookrelay.config import get_settings
from hookrelay.database import get_db
from hookrelay.models.tunnel import Tunnel
from hookrelay.models.webhook import Webhook, generate_webhook_id
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.schemas.api_responses import (
    ResendRequest,
    SignatureTestRequest,
    SignatureTestResponse,
    WebhookCreateRequest,
    WebhookUpdateRequest,
)
from hookrelay.schemas.webhook_config import (
    FilterConfig,
    ForwardingConfig,
    NotificationConfig,
    RetentionConfig,
    SecurityConfig,
    TransformationConfig,
    dump_config,
)
from hookrelay.services.event_store import (
    count_events_by_status,
    delete_webhook_events,
    get_owned_event,
    get_owned_webhook,
    list_events,
)
from hookrelay.services.replay import replay_event, resend_event
from hookrelay.utils.webhook_signatures import compute_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

MAX_PAGE_SIZE = 200
RECENT_EVENTS_LIMIT = 10

_SECTION_SCHEMAS: dict[str, type[BaseModel]] = {
    "forwarding": ForwardingConfig,
    "security": SecurityConfig,
    "filters": FilterConfig,
    "transformation": TransformationConfig,
    "notifications": NotificationConfig,
    "retention": RetentionConfig,
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def mask_security(security: Optional[dict]) -> dict:
    """Security section with credentials replaced by has_* flags."""
    masked = dict(security or {})
    for key in ("auth_token", "basic_password"):
        masked[f"has_{key}"] = bool(masked.pop(key, None))
    signature = dict(masked.get("signature") or {})
    signature["has_secret"] = bool(signature.pop("secret", None))
    masked["signature"] = signature
    return masked


def serialize_webhook(webhook: Webhook) -> dict:
    return {
        "id": str(webhook.id),
        "user_id": str(webhook.user_id),
        "project_id": str(webhook.project_id) if webhook.project_id else None,
        "name": webhook.name,
        "description": webhook.description,
        "webhook_id": webhook.webhook_id,
        "webhook_url": webhook.webhook_url,
        "status": webhook.status,
        "forwarding": webhook.forwarding,
        "security": mask_security(webhook.security),
        "filters": webhook.filters,
        "rules": webhook.rules,
        "transformation": webhook.transformation,
        "notifications": webhook.notifications,
        "retention": webhook.retention,
        "stats": {
            "total_requests": webhook.total_requests,
            "successful_forwards": webhook.successful_forwards,
            "failed_forwards": webhook.failed_forwards,
            "last_request_at": _iso(webhook.last_request_at),
        },
        "expires_at": _iso(webhook.expires_at),
        "created_at": _iso(webhook.created_at),
        "updated_at": _iso(webhook.updated_at),
    }


def serialize_event(event: WebhookEvent, full: bool = True) -> dict:
    data = {
        "id": str(event.id),
        "webhook_id": str(event.webhook_id),
        "method": event.method,
        "url": event.url,
        "status": event.status,
        "client_ip": event.client_ip,
        "forwarding": event.forwarding,
        "replay": {
            "is_replay": event.is_replay,
            "original_request_id": str(event.original_request_id) if event.original_request_id else None,
            "replay_count": event.replay_count,
        },
        "created_at": _iso(event.created_at),
    }
    if full:
        data.update({
            "headers": event.headers,
            "body": event.body,
            "raw_body": event.raw_body,
            "query": event.query,
            "content_type": event.content_type,
            "user_agent": event.user_agent,
            "signature": event.signature,
            "payload_hash": event.payload_hash,
            "tags": event.tags,
            "notes": event.notes,
            "correlation_id": event.correlation_id,
        })
    return data


def _merge_section(name: str, current: Optional[dict], patch: dict) -> dict:
    """
    Shallow-merge patch over the stored section and re-validate it.
    security.signature is merged one level deeper so a signature block
    echoed back without its masked secret keeps the stored one.
    """
    if name == "security" and isinstance(patch.get("signature"), dict):
        stored_signature = (current or {}).get("signature") or {}
        patch = {**patch, "signature": {**stored_signature, **patch["signature"]}}
    merged = {**(current or {}), **patch}
    try:
        return dump_config(_SECTION_SCHEMAS[name].model_validate(merged))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid {name} config: {e.errors()}")


async def _ensure_tunnels_owned(db: AsyncSession, forwarding: dict, user_id: uuid.UUID) -> None:
    tunnel_ids = []
    if forwarding.get("enabled"):
        if forwarding.get("target_type") == "tunnel" and forwarding.get("tunnel_id"):
            tunnel_ids.append(forwarding["tunnel_id"])
        if forwarding.get("target_type") == "multiple":
            tunnel_ids.extend(
                d["tunnel_id"] for d in forwarding.get("destinations") or []
                if d.get("type") == "tunnel" and d.get("tunnel_id")
            )
    for tunnel_id in tunnel_ids:
        result = await db.execute(
            select(Tunnel.id).where(Tunnel.id == uuid.UUID(str(tunnel_id)), Tunnel.user_id == user_id)
        )
        if result.scalar_one_or_none() is None:
            raise HTTPException(status_code=404, detail="Tunnel not found")


async def _load_webhook(db: AsyncSession, webhook_id: uuid.UUID, user_id: uuid.UUID) -> Webhook:
    webhook = await get_owned_webhook(db, webhook_id, user_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


async def _load_event(db: AsyncSession, webhook: Webhook, request_id: uuid.UUID) -> WebhookEvent:
    event = await get_owned_event(db, webhook, request_id)
    if not event:
        raise HTTPException(status_code=404, detail="Request not found")
    return event


# === CRUD ===

@router.post("")
async def create_webhook(
    payload: WebhookCreateRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    forwarding = dump_config(payload.forwarding)
    await _ensure_tunnels_owned(db, forwarding, user_id)

    public_id = generate_webhook_id()
    base_url = get_settings().webhook_base_url.rstrip("/")
    expires_at = None
    if payload.expires_in:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload.expires_in)

    webhook = Webhook(
        user_id=user_id,
        project_id=payload.project_id,
        name=payload.name.strip(),
        description=payload.description,
        webhook_id=public_id,
        webhook_url=f"{base_url}/{public_id}",
        forwarding=forwarding,
        security=dump_config(payload.security),
        filters=dump_config(payload.filters),
        rules=[dump_config(rule) for rule in payload.rules],
        transformation=dump_config(payload.transformation),
        notifications=dump_config(payload.notifications),
        retention=dump_config(payload.retention),
        expires_at=expires_at,
    )
    db.add(webhook)
    await db.flush()
    await db.refresh(webhook)

    logger.info("Webhook %s created by user %s", public_id[:8], str(user_id)[:8])
    return {"webhook": serialize_webhook(webhook), "message": "Webhook created successfully"}


@router.get("")
async def list_webhooks(
    status: Optional[str] = Query(default=None, pattern="^(active|paused|expired)$"),
    project_id: Optional[uuid.UUID] = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    conditions = [Webhook.user_id == user_id]
    if status:
        conditions.append(Webhook.status == status)
    if project_id:
        conditions.append(Webhook.project_id == project_id)

    result = await db.execute(
        select(Webhook).where(*conditions).order_by(Webhook.created_at.desc())
    )
    return {"webhooks": [serialize_webhook(w) for w in result.scalars().all()]}


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    return {"webhook": serialize_webhook(webhook)}


@router.put("/{webhook_id}")
async def update_webhook(
    webhook_id: uuid.UUID,
    payload: WebhookUpdateRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    fields = payload.model_fields_set

    if payload.name:
        webhook.name = payload.name.strip()
    if "description" in fields:
        webhook.description = payload.description
    if payload.status:
        webhook.status = payload.status

    for section in _SECTION_SCHEMAS:
        patch = getattr(payload, section)
        if patch is not None:
            setattr(webhook, section, _merge_section(section, getattr(webhook, section), patch))

    if payload.rules is not None:
        webhook.rules = [dump_config(rule) for rule in payload.rules]
    if payload.expires_in:
        webhook.expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload.expires_in)

    if payload.forwarding is not None:
        await _ensure_tunnels_owned(db, webhook.forwarding, user_id)

    await db.flush()
    await db.refresh(webhook)
    return {"webhook": serialize_webhook(webhook), "message": "Webhook updated successfully"}


@router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    deleted = await delete_webhook_events(db, webhook)
    await db.delete(webhook)
    logger.info("Webhook %s deleted with %d events", webhook.webhook_id[:8], deleted)
    return {"msg": "Webhook deleted successfully", "deleted_requests": deleted}


# === STATS / HISTORY ===

@router.get("/{webhook_id}/stats")
async def get_webhook_stats(
    webhook_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    by_status = await count_events_by_status(db, webhook)
    recent, total = await list_events(db, webhook, limit=RECENT_EVENTS_LIMIT)

    forwarded = by_status.get("forwarded", 0)
    failed = by_status.get("failed", 0)
    success_rate = round(forwarded / total * 100, 2) if total else 0

    return {
        "stats": {
            "total_requests": total,
            "forwarded_count": forwarded,
            "failed_count": failed,
            "received_count": by_status.get("received", 0),
            "replayed_count": by_status.get("replayed", 0),
            "success_rate": success_rate,
            "last_request_at": _iso(webhook.last_request_at),
            "counters": {
                "total_requests": webhook.total_requests,
                "successful_forwards": webhook.successful_forwards,
                "failed_forwards": webhook.failed_forwards,
            },
            "recent_requests": [serialize_event(e, full=False) for e in recent],
        }
    }


@router.get("/{webhook_id}/requests")
async def get_webhook_requests(
    webhook_id: uuid.UUID,
    status: Optional[str] = Query(default=None, pattern="^(received|forwarded|failed|replayed)$"),
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    events, total = await list_events(db, webhook, status=status, limit=limit, offset=offset)
    return {
        "requests": [serialize_event(e) for e in events],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{webhook_id}/requests/{request_id}")
async def get_webhook_request(
    webhook_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    event = await _load_event(db, webhook, request_id)
    return {"request": serialize_event(event)}


# === REPLAY / RESEND ===

@router.post("/{webhook_id}/requests/{request_id}/replay")
async def replay_webhook_request(
    webhook_id: uuid.UUID,
    request_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    event = await _load_event(db, webhook, request_id)
    replay = await replay_event(db, webhook, event)
    return {"request": serialize_event(replay), "message": "Webhook replayed successfully"}


@router.post("/{webhook_id}/requests/{request_id}/resend")
async def resend_webhook_request(
    webhook_id: uuid.UUID,
    request_id: uuid.UUID,
    payload: ResendRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    webhook = await _load_webhook(db, webhook_id, user_id)
    event = await _load_event(db, webhook, request_id)

    overrides: dict[str, Any] = {}
    for key in ("method", "headers", "body"):
        if key in payload.model_fields_set:
            overrides[key] = getattr(payload, key)

    resent = await resend_event(db, webhook, event, overrides)
    return {"request": serialize_event(resent), "message": "Webhook resent successfully"}


@router.post("/{webhook_id}/test-signature", response_model=SignatureTestResponse)
async def test_signature(
    webhook_id: uuid.UUID,
    payload: SignatureTestRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The signature header a sender would have to present for this body."""
    webhook = await _load_webhook(db, webhook_id, user_id)
    config = (webhook.security or {}).get("signature") or {}
    if not config.get("secret"):
        raise HTTPException(status_code=400, detail="No signature secret configured")

    algorithm = config.get("algorithm") or "sha256"
    encoding = config.get("encoding") or "hex"
    signature = compute_signature(payload.body, config["secret"], algorithm, encoding)
    return SignatureTestResponse(
        header_name=config.get("header_name") or "X-Webhook-Signature",
        algorithm=algorithm,
        encoding=encoding,
        signature=signature,
        header_value=f"{algorithm}={signature}",
    )
