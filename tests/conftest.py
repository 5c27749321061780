"""
Test configuration and fixtures.
Uses SQLite (in-memory, or a temp file when several sessions must see the
same rows) for fast tests. Outbound HTTP goes through httpx.MockTransport.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import jwt as pyjwt
import pytest
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from hookrelay.config import get_settings
from hookrelay.database import Base, configure_session_factory
from hookrelay.models.webhook import Webhook, generate_webhook_id
from hookrelay.models.webhook_event import WebhookEvent
from hookrelay.schemas.webhook_config import (
    FilterConfig,
    ForwardingConfig,
    NotificationConfig,
    RetentionConfig,
    SecurityConfig,
    TransformationConfig,
    dump_config,
)
from hookrelay.services.task_dispatch import reset_task_pool

JWT_SECRET = "test-jwt-secret-with-enough-length-0123"
USER_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_USER_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Register UUID as CHAR(32) for SQLite so hex values keep text affinity
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Deterministic settings and a fresh background pool for every test."""
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("RETENTION_SWEEPER_ENABLED", "false")
    monkeypatch.setenv("SENTRY_DSN", "")
    monkeypatch.setenv("WEBHOOK_BASE_URL", "http://testserver/webhook")
    get_settings.cache_clear()
    reset_task_pool()
    yield
    reset_task_pool()
    get_settings.cache_clear()


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """
    File-backed SQLite shared by the test, request handlers and background
    tasks. Installed as the application's session factory for the test.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hookrelay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    configure_session_factory(factory)
    yield factory
    configure_session_factory(None)
    await engine.dispose()


@pytest.fixture
async def api(session_factory):
    """ASGI client for the app with get_db bound to the shared test database."""
    from hookrelay.database import get_db

    with patch("hookrelay.main.configure_structured_logging"):
        from hookrelay.main import create_app
        app = create_app()

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    with patch("hookrelay.utils.heartbeat.get_redis", new_callable=AsyncMock, return_value=redis_mock):
        yield redis_mock


def make_token(user_id=USER_ID, secret: str = JWT_SECRET, expires_in: int = 3600, **claims) -> str:
    payload = {"user_id": str(user_id), **claims}
    payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return pyjwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id=USER_ID) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def build_webhook(
    user_id=USER_ID,
    forwarding: dict = None,
    security: dict = None,
    filters: dict = None,
    rules: list = None,
    transformation: dict = None,
    notifications: dict = None,
    retention: dict = None,
    **fields,
) -> Webhook:
    """Unsaved Webhook with validated config sections (partial dicts are filled with defaults)."""
    public_id = fields.pop("webhook_id", None) or generate_webhook_id()
    return Webhook(
        user_id=user_id,
        name=fields.pop("name", "Test Hook"),
        webhook_id=public_id,
        webhook_url=f"http://testserver/webhook/{public_id}",
        forwarding=dump_config(ForwardingConfig.model_validate(forwarding or {})),
        security=dump_config(SecurityConfig.model_validate(security or {})),
        filters=dump_config(FilterConfig.model_validate(filters or {})),
        rules=list(rules or []),
        transformation=dump_config(TransformationConfig.model_validate(transformation or {})),
        notifications=dump_config(NotificationConfig.model_validate(notifications or {})),
        retention=dump_config(RetentionConfig.model_validate(retention or {})),
        **fields,
    )


def build_event(webhook: Webhook, body=None, raw_body: str = None, **fields) -> WebhookEvent:
    """Unsaved WebhookEvent in status 'received' for webhook."""
    if raw_body is None and body is not None:
        import json
        raw_body = json.dumps(body)
    return WebhookEvent(
        webhook_id=webhook.id,
        user_id=webhook.user_id,
        method=fields.pop("method", "POST"),
        url=fields.pop("url", f"/webhook/{webhook.webhook_id}"),
        headers=fields.pop("headers", {"content-type": "application/json"}),
        body=body,
        raw_body=raw_body,
        query=fields.pop("query", {}),
        content_type=fields.pop("content_type", "application/json"),
        status=fields.pop("status", "received"),
        forwarding=fields.pop("forwarding", {"attempted": False, "success": False}),
        **fields,
    )


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by handler(request)."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
