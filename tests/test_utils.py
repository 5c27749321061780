"""
Tests for hookrelay/utils - structured logging and worker heartbeats.
"""
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from hookrelay.utils.heartbeat import HEARTBEAT_KEY_PREFIX, last_heartbeat, record_heartbeat
from hookrelay.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


class TestStructuredJsonFormatter:
    def _record(self, **extra):
        record = logging.LogRecord(
            "hookrelay.services.forwarding", logging.INFO, __file__, 1,
            "Webhook %s forwarded", ("abc",), None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_line_with_correlation_id(self):
        set_correlation_id("cid-42")
        line = StructuredJsonFormatter().format(self._record())
        entry = json.loads(line)
        assert entry["message"] == "Webhook abc forwarded"
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "cid-42"
        assert entry["module"] == "hookrelay.services.forwarding"

    def test_extra_fields_copied(self):
        entry = json.loads(StructuredJsonFormatter().format(
            self._record(webhook_id="abc", status_code=502, duration_ms=12, unrelated="x"),
        ))
        assert entry["webhook_id"] == "abc"
        assert entry["status_code"] == 502
        assert entry["duration_ms"] == 12
        assert "unrelated" not in entry

    def test_generate_correlation_id(self):
        cid = generate_correlation_id()
        assert len(cid) == 32
        set_correlation_id(cid)
        assert get_correlation_id() == cid


class TestHeartbeat:
    async def test_record_and_read(self, mock_redis):
        mock_redis.get = AsyncMock(return_value="2026-01-01T00:00:00+00:00")

        await record_heartbeat("retention_sweeper", ttl_seconds=60)
        key, value = mock_redis.set.call_args[0]
        assert key == f"{HEARTBEAT_KEY_PREFIX}retention_sweeper"
        assert mock_redis.set.call_args.kwargs["ex"] == 60

        assert await last_heartbeat("retention_sweeper") == "2026-01-01T00:00:00+00:00"

    async def test_redis_down_is_tolerated(self):
        with patch("hookrelay.utils.heartbeat.get_redis", new_callable=AsyncMock, side_effect=ConnectionError("down")):
            await record_heartbeat("retention_sweeper")
            assert await last_heartbeat("retention_sweeper") is None
