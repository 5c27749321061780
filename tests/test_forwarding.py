"""
Tests for hookrelay/services/forwarding.py - single and fan-out dispatch.
"""
import asyncio
import json
import uuid
from unittest.mock import patch

import httpx
import pytest

from hookrelay.models.tunnel import Tunnel
from hookrelay.services.forwarding import (
    build_forward_headers,
    encode_body,
    forward_event,
    select_destinations,
    strip_webhook_prefix,
)
from conftest import build_event, build_webhook, mock_client


async def _persist(db, webhook, event):
    db.add(webhook)
    await db.flush()
    event.webhook_id = webhook.id
    event.user_id = webhook.user_id
    db.add(event)
    await db.flush()
    return webhook, event


def _ok_handler(captured: list):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"received": True})
    return handler


async def _never_answers(request: httpx.Request) -> httpx.Response:
    await asyncio.sleep(5)
    return httpx.Response(200)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_strip_prefix_and_query(self):
        assert strip_webhook_prefix("/webhook/abc/github/push?x=1", "abc") == "/github/push"

    def test_strip_prefix_root(self):
        assert strip_webhook_prefix("/webhook/abc", "abc") == "/"
        assert strip_webhook_prefix("/webhook/abc?token=t", "abc") == "/"

    def test_forward_headers_drop_hop_by_hop(self):
        headers = build_forward_headers({
            "Host": "hooks.example.com",
            "Content-Length": "12",
            "Connection": "keep-alive",
            "X-GitHub-Event": "push",
            "Content-Type": "text/plain",
        })
        assert headers == {"X-GitHub-Event": "push", "Content-Type": "text/plain"}

    def test_forward_headers_content_type_override(self):
        headers = build_forward_headers({"Content-Type": "text/plain"}, "application/json")
        assert headers == {"content-type": "application/json"}

    def test_encode_untransformed_uses_raw_body(self):
        raw = '{"b": 2,  "a": 1}'
        content, content_type = encode_body({"a": 1, "b": 2}, raw, transformed=False)
        assert content == raw.encode()
        assert content_type is None

    def test_encode_untransformed_prefers_exact_bytes(self):
        payload = b"\xff\xfe\x00binary"
        content, content_type = encode_body("��\x00binary", "��\x00binary", False, payload)
        assert content == payload
        assert content_type is None

    def test_encode_transformed_json(self):
        content, content_type = encode_body({"a": 1}, '{"ignored": true}', transformed=True)
        assert json.loads(content) == {"a": 1}
        assert content_type == "application/json"

    def test_encode_empty(self):
        assert encode_body(None, None, transformed=False) == (None, None)

    def test_select_destinations(self):
        destinations = [
            {"name": "a", "enabled": True},
            {"name": "b", "enabled": False},
            {"name": "c"},
        ]
        assert [d["name"] for d in select_destinations(destinations, None)] == ["a", "c"]
        assert [d["name"] for d in select_destinations(destinations, ["b", "c"])] == ["c"]


# ---------------------------------------------------------------------------
# Single target
# ---------------------------------------------------------------------------

class TestForwardSingle:
    async def test_disabled_forwarding_returns_none(self, db):
        webhook = build_webhook()
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))
        async with mock_client(_ok_handler([])) as client:
            result = await forward_event(db, webhook, event, client=client)
        assert result is None
        assert event.status == "received"
        assert event.forwarding["attempted"] is False

    async def test_url_target_success(self, db):
        captured = []
        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://example.com/hook",
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}, raw_body='{"a":1}'))

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["attempted"] is True
        assert result["success"] is True
        assert result["status_code"] == 200
        assert result["target_url"] == "https://example.com/hook"
        assert result["response_body"] == {"received": True}
        assert event.status == "forwarded"

        assert len(captured) == 1
        assert captured[0].method == "POST"
        assert captured[0].content == b'{"a":1}'

        await db.refresh(webhook)
        assert webhook.successful_forwards == 1
        assert webhook.failed_forwards == 0

    async def test_error_status_still_counts_as_delivered(self, db):
        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://example.com/hook",
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(lambda r: httpx.Response(503, text="busy")) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is True
        assert result["status_code"] == 503
        assert result["response_body"] == "busy"
        assert event.status == "forwarded"

    async def test_timeout_marks_failed(self, db):
        """A target that never answers within 50ms fails and bumps failed_forwards."""
        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://slow.example.com/",
            "timeout": 50,
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_never_answers) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert result["error"] == "timeout of 50ms exceeded"
        assert event.status == "failed"

        await db.refresh(webhook)
        assert webhook.failed_forwards == 1
        assert webhook.successful_forwards == 0

    async def test_network_error_marks_failed(self, db):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://down.example.com/",
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(handler) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert "connection refused" in result["error"]
        assert event.status == "failed"

    async def test_malformed_stored_url_marks_failed(self, db):
        """A target URL that httpx cannot parse is recorded as a failure, not raised."""
        webhook = build_webhook()
        webhook.forwarding = {
            **webhook.forwarding,
            "enabled": True, "target_type": "url", "target_url": "http://bad.example.com:abc/",
        }
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        with patch("hookrelay.services.forwarding.dispatch_notifications") as mock_notify:
            async with mock_client(_ok_handler([])) as client:
                result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert result["error"]
        assert event.status == "failed"
        mock_notify.assert_called_once_with(webhook, event, "failed")

        await db.refresh(webhook)
        assert webhook.failed_forwards == 1

    async def test_inactive_tunnel_fails_without_request(self, db):
        captured = []
        tunnel = Tunnel(user_id=uuid.uuid4(), subdomain="dev-1", local_port=3000, status="closed")
        db.add(tunnel)
        await db.flush()

        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "tunnel", "tunnel_id": str(tunnel.id),
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert result["error"] == "Tunnel not active or not found"
        assert captured == []

    async def test_active_tunnel_uses_local_port_and_subpath(self, db):
        captured = []
        tunnel = Tunnel(user_id=uuid.uuid4(), subdomain="dev-2", local_port=4567, status="active")
        db.add(tunnel)
        await db.flush()

        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "tunnel", "tunnel_id": str(tunnel.id),
        })
        event = build_event(webhook, {"a": 1}, url=f"/webhook/{webhook.webhook_id}/github/push?x=1")
        webhook, event = await _persist(db, webhook, event)

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is True
        assert result["target_url"] == "http://localhost:4567/github/push"
        assert str(captured[0].url) == "http://localhost:4567/github/push"

    async def test_transformed_body_sent_as_json(self, db):
        captured = []
        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://example.com/hook",
        })
        event = build_event(webhook, "a=1", raw_body="a=1", headers={"Content-Type": "text/plain"})
        webhook, event = await _persist(db, webhook, event)

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, body={"a": "1"}, rule="reshape", client=client)

        assert json.loads(captured[0].content) == {"a": "1"}
        assert captured[0].headers["content-type"] == "application/json"
        assert result["transformed"] is True
        assert result["rule"] == "reshape"

    async def test_outcome_triggers_notification(self, db):
        webhook = build_webhook(forwarding={
            "enabled": True, "target_type": "url", "target_url": "https://example.com/hook",
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        with patch("hookrelay.services.forwarding.dispatch_notifications") as mock_notify:
            async with mock_client(_ok_handler([])) as client:
                await forward_event(db, webhook, event, client=client)

        mock_notify.assert_called_once_with(webhook, event, "forwarded")


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class TestForwardMultiple:
    async def test_one_ok_one_timeout(self, db):
        def handler(request):
            if request.url.host == "slow.example.com":
                return _never_answers(request)
            return httpx.Response(200, json={})

        webhook = build_webhook(forwarding={
            "enabled": True,
            "target_type": "multiple",
            "timeout": 50,
            "destinations": [
                {"name": "fast", "type": "url", "url": "https://fast.example.com/"},
                {"name": "slow", "type": "url", "url": "https://slow.example.com/"},
            ],
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(handler) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert len(result["destinations"]) == 2
        by_name = {d["name"]: d for d in result["destinations"]}
        assert by_name["fast"]["success"] is True
        assert by_name["fast"]["status_code"] == 200
        assert by_name["slow"]["success"] is False
        assert by_name["slow"]["error"] == "timeout of 50ms exceeded"
        assert result["error"] == "1 of 2 destinations failed"
        assert event.status == "failed"

        await db.refresh(webhook)
        assert webhook.failed_forwards == 1

    async def test_all_ok(self, db):
        captured = []
        webhook = build_webhook(forwarding={
            "enabled": True,
            "target_type": "multiple",
            "destinations": [
                {"name": "a", "type": "url", "url": "https://a.example.com/"},
                {"name": "b", "type": "url", "url": "https://b.example.com/"},
                {"name": "off", "type": "url", "url": "https://off.example.com/", "enabled": False},
            ],
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is True
        assert sorted(r.url.host for r in captured) == ["a.example.com", "b.example.com"]
        assert "error" not in result

    async def test_rule_restricts_destinations(self, db):
        captured = []
        webhook = build_webhook(forwarding={
            "enabled": True,
            "target_type": "multiple",
            "destinations": [
                {"name": "ci", "type": "url", "url": "https://ci.example.com/"},
                {"name": "archive", "type": "url", "url": "https://archive.example.com/"},
            ],
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, destinations=["ci"], client=client)

        assert [d["name"] for d in result["destinations"]] == ["ci"]
        assert [r.url.host for r in captured] == ["ci.example.com"]

    async def test_no_enabled_destinations_fails(self, db):
        webhook = build_webhook(forwarding={"enabled": True, "target_type": "multiple", "destinations": []})
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler([])) as client:
            result = await forward_event(db, webhook, event, client=client)

        assert result["success"] is False
        assert result["error"] == "No enabled destinations"
        assert result["destinations"] == []

    async def test_unresolvable_tunnel_destination_recorded(self, db):
        webhook = build_webhook(forwarding={
            "enabled": True,
            "target_type": "multiple",
            "destinations": [
                {"name": "ok", "type": "url", "url": "https://ok.example.com/"},
                {"name": "gone", "type": "tunnel", "tunnel_id": str(uuid.uuid4())},
            ],
        })
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler([])) as client:
            result = await forward_event(db, webhook, event, client=client)

        gone = result["destinations"][1]
        assert gone["name"] == "gone"
        assert gone["error"] == "Tunnel not active or not found"
        assert result["success"] is False

    async def test_malformed_destination_url_does_not_sink_siblings(self, db):
        captured = []
        webhook = build_webhook()
        webhook.forwarding = {
            **webhook.forwarding,
            "enabled": True,
            "target_type": "multiple",
            "destinations": [
                {"name": "ok", "type": "url", "url": "https://ok.example.com/", "enabled": True},
                {"name": "bad", "type": "url", "url": "http://bad.example.com:abc/", "enabled": True},
            ],
        }
        webhook, event = await _persist(db, webhook, build_event(webhook, {"a": 1}))

        async with mock_client(_ok_handler(captured)) as client:
            result = await forward_event(db, webhook, event, client=client)

        by_name = {d["name"]: d for d in result["destinations"]}
        assert by_name["ok"]["success"] is True
        assert by_name["bad"]["success"] is False
        assert by_name["bad"]["error"]
        assert [r.url.host for r in captured] == ["ok.example.com"]
        assert result["success"] is False
        assert event.status == "failed"
