"""
Public ingestion endpoint - any HTTP method at /webhook/{webhook_id}[/{path}].

Gates (in order), each rejecting before an event row exists:
1. Lookup - 404 unknown/inactive, 410 expired
2. Filters - 405 method, 415 content type
3. IP whitelist - 403
4. Signature - 401 missing/invalid HMAC
5. Token / basic auth - 401

Then the event is written and committed, and 200 is returned. Forwarding
and notifications run afterwards on the background pool.
"""
import base64
import binascii
import hmac
import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.database import get_db
from hookrelay.models.webhook import Webhook
from hookrelay.schemas.api_responses import ReceiveResponse
from hookrelay.services.event_store import find_active_webhook, record_event
from hookrelay.services.notifications import dispatch_notifications
from hookrelay.services.pipeline import forwarding_enabled, schedule_processing
from hookrelay.utils.webhook_signatures import validate_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["ingestion"])

ACCEPTED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class IngestionRejected(HTTPException):
    """A gate refused the inbound call. Rendered as {"error": detail}, no event row is written."""


async def ingestion_rejected_handler(request: Request, exc: IngestionRejected) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, falling back to the socket address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


def parse_body(raw: bytes, content_type: Optional[str]) -> tuple[Any, Optional[str]]:
    """
    (parsed body, raw text). JSON and form bodies are parsed, anything else
    is kept as text. The text is a display view only: undecodable bytes are
    replaced, so the exact bytes are stored separately for forwarding.
    """
    if not raw:
        return None, None
    text = raw.decode("utf-8", errors="replace")
    media_type = (content_type or "").split(";")[0].strip().lower()

    if media_type == "application/json" or media_type.endswith("+json"):
        try:
            return json.loads(text), text
        except ValueError:
            logger.debug("Body declared as JSON but did not parse - storing as text")
            return text, text
    if media_type == "application/x-www-form-urlencoded":
        return dict(parse_qsl(text, keep_blank_values=True)), text
    return text, text


def _check_filters(webhook: Webhook, method: str, content_type: Optional[str]) -> None:
    filters = webhook.filters or {}
    allowed_methods = filters.get("allowed_methods") or []
    if allowed_methods and method not in allowed_methods:
        raise IngestionRejected(status_code=405, detail="Method not allowed")

    allowed_types = [t.lower() for t in filters.get("allowed_content_types") or []]
    if allowed_types:
        media_type = (content_type or "").split(";")[0].strip().lower()
        if media_type not in allowed_types:
            raise IngestionRejected(status_code=415, detail="Content type not allowed")


def _check_ip(webhook: Webhook, client_ip: str) -> None:
    whitelist = (webhook.security or {}).get("ip_whitelist") or []
    if whitelist and client_ip not in whitelist:
        logger.warning("Rejected IP %s for webhook %s", client_ip, webhook.webhook_id[:8])
        raise IngestionRejected(status_code=403, detail="IP not whitelisted")


def _check_signature(webhook: Webhook, request: Request, raw: bytes) -> Optional[dict]:
    """Returns the signature record for the event, or None when validation is off."""
    config = (webhook.security or {}).get("signature") or {}
    if not config.get("enabled"):
        return None

    header_name = config.get("header_name") or "X-Webhook-Signature"
    algorithm = config.get("algorithm") or "sha256"
    provided = request.headers.get(header_name)
    if not provided:
        logger.warning("Missing %s header for webhook %s", header_name, webhook.webhook_id[:8])
        raise IngestionRejected(status_code=401, detail="Missing webhook signature")

    valid = validate_signature(
        raw, provided, config.get("secret"), algorithm, config.get("encoding") or "hex",
    )
    if not valid:
        logger.warning(
            "Invalid webhook signature: webhook=%s ip=%s",
            webhook.webhook_id[:8], get_client_ip(request),
        )
        raise IngestionRejected(status_code=401, detail="Invalid webhook signature")
    return {"provided": provided, "valid": True, "algorithm": algorithm}


def _basic_credentials(request: Request) -> tuple[str, str]:
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("basic "):
        return "", ""
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "", ""
    username, _, password = decoded.partition(":")
    return username, password


def _safe_equals(presented: Optional[str], expected: Optional[str]) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def _check_auth(webhook: Webhook, request: Request) -> None:
    security = webhook.security or {}
    if not security.get("require_auth"):
        return

    auth_type = security.get("auth_type") or "none"
    if auth_type == "token":
        token = request.headers.get("x-webhook-token") or request.query_params.get("token")
        if not _safe_equals(token, security.get("auth_token")):
            raise IngestionRejected(status_code=401, detail="Invalid authentication token")
    elif auth_type == "basic":
        username, password = _basic_credentials(request)
        if not (
            _safe_equals(username, security.get("basic_username"))
            and _safe_equals(password, security.get("basic_password"))
        ):
            raise IngestionRejected(
                status_code=401,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )


async def _receive(webhook_id: str, request: Request, db: AsyncSession) -> ReceiveResponse:
    webhook = await find_active_webhook(db, webhook_id)
    if not webhook:
        raise IngestionRejected(status_code=404, detail="Webhook not found")

    if webhook.is_expired:
        webhook.status = "expired"
        await db.commit()
        logger.info("Webhook %s expired - rejecting", webhook.webhook_id[:8])
        raise IngestionRejected(status_code=410, detail="Webhook expired")

    method = request.method.upper()
    content_type = request.headers.get("content-type")
    client_ip = get_client_ip(request)

    _check_filters(webhook, method, content_type)
    _check_ip(webhook, client_ip)

    raw = await request.body()
    signature = _check_signature(webhook, request, raw)
    _check_auth(webhook, request)

    body, raw_text = parse_body(raw, content_type)
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"

    event = await record_event(
        db,
        webhook,
        method=method,
        url=url,
        headers=dict(request.headers),
        body=body,
        raw_body=raw_text,
        raw_bytes=raw or None,
        query=dict(request.query_params),
        content_type=content_type,
        client_ip=client_ip,
        user_agent=request.headers.get("user-agent"),
        signature=signature,
    )
    # Durable before the ack and before any background work reads it
    await db.commit()

    logger.info(
        "Webhook %s received %s (request %s)",
        webhook.webhook_id[:8], method, str(event.id)[:8],
        extra={"webhook_id": webhook.webhook_id, "request_id": str(event.id)},
    )

    dispatch_notifications(webhook, event, "received")
    if forwarding_enabled(webhook):
        schedule_processing(event.id)

    return ReceiveResponse(requestId=str(event.id))


@router.api_route("/{webhook_id}", methods=ACCEPTED_METHODS, response_model=ReceiveResponse)
async def receive_webhook(
    webhook_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    return await _receive(webhook_id, request, db)


@router.api_route("/{webhook_id}/{path:path}", methods=ACCEPTED_METHODS, response_model=ReceiveResponse)
async def receive_webhook_subpath(
    webhook_id: str,
    path: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Same as receive_webhook; the sub-path is passed through to tunnel targets."""
    return await _receive(webhook_id, request, db)
