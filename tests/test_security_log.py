"""Tests for security event log backends."""

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatguard.app.core.config import Settings
from chatguard.app.core.context import ClientContext, set_client_context
from chatguard.app.middleware.security_log import (
    InMemorySecurityEventLog,
    RedisSecurityEventLog,
    SecurityEvent,
    create_event_log,
)


@pytest.fixture(autouse=True)
def clear_context():
    yield
    set_client_context(None)


class TestSecurityEvent:
    """Tests for the event record."""

    def test_create_stamps_client_context(self):
        set_client_context(ClientContext(
            session_id="s-1", user_agent="pytest", origin="https://chat.example"
        ))
        event = SecurityEvent.create("token_cache_hit", {"cached": True})

        assert event.session_id == "s-1"
        assert event.user_agent == "pytest"
        assert event.origin == "https://chat.example"
        assert event.details == {"cached": True}
        assert event.timestamp

    def test_create_without_context(self):
        event = SecurityEvent.create("token_cache_cleared")
        assert event.session_id is None
        assert event.details == {}

    def test_dict_round_trip(self):
        event = SecurityEvent(event="app_check_failed", details={"operation": "send_message"})
        assert SecurityEvent.from_dict(event.to_dict()) == event


class TestInMemorySecurityEventLog:
    """Tests for the in-process ring buffer."""

    @pytest.mark.asyncio
    async def test_keeps_newest_entries(self):
        log = InMemorySecurityEventLog(max_entries=3)
        for i in range(5):
            await log.record("token_request_start", {"n": i})

        entries = await log.entries()
        assert len(entries) == 3
        assert [e.details["n"] for e in entries] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_clear(self):
        log = InMemorySecurityEventLog()
        await log.record("token_cache_hit")
        await log.clear()
        assert await log.entries() == []

    @pytest.mark.asyncio
    async def test_failures_logged_as_warning(self, caplog):
        log = InMemorySecurityEventLog()
        security_logger = logging.getLogger("chatguard.security")
        # The chatguard logger does not propagate to root once configured
        security_logger.addHandler(caplog.handler)
        try:
            with caplog.at_level(logging.INFO, logger="chatguard.security"):
                await log.record("token_request_success")
                await log.record("token_request_failed", {"error": "timeout"})
        finally:
            security_logger.removeHandler(caplog.handler)

        levels = {r.event: r.levelno for r in caplog.records}
        assert levels["token_request_success"] == logging.INFO
        assert levels["token_request_failed"] == logging.WARNING


class TestRedisSecurityEventLog:
    """Tests for the Redis list backend with a mocked async client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True])
        client.pipeline.return_value = pipe
        client.lrange = AsyncMock(return_value=[])
        client.delete = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_append_pushes_and_trims_in_pipeline(self, client):
        log = RedisSecurityEventLog(key="events", max_entries=100, redis_client=client)
        await log.record("token_cache_hit")

        pipe = client.pipeline.return_value
        key, payload = pipe.rpush.call_args.args
        assert key == "events"
        assert json.loads(payload)["event"] == "token_cache_hit"
        pipe.ltrim.assert_called_once_with("events", -100, -1)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entries_decoded_and_corrupt_skipped(self, client):
        client.lrange.return_value = [
            json.dumps({"event": "token_request_start", "details": {}}).encode(),
            b"not json",
            json.dumps({"event": "token_request_success", "details": {"cached": False}}).encode(),
        ]
        log = RedisSecurityEventLog(key="events", redis_client=client)

        assert [e.event for e in await log.entries()] == [
            "token_request_start", "token_request_success",
        ]
        client.lrange.assert_awaited_once_with("events", 0, -1)

    @pytest.mark.asyncio
    async def test_redis_errors_do_not_propagate(self, client):
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        client.lrange.side_effect = RedisConnectionError("down")
        log = RedisSecurityEventLog(redis_client=client)

        await log.record("token_cache_hit")
        assert await log.entries() == []

    @pytest.mark.asyncio
    async def test_clear_deletes_key(self, client):
        log = RedisSecurityEventLog(key="events", redis_client=client)
        await log.clear()
        client.delete.assert_awaited_once_with("events")

    @pytest.mark.asyncio
    async def test_close_releases_client(self, client):
        log = RedisSecurityEventLog(redis_client=client)
        await log.close()
        client.aclose.assert_awaited_once()
        await log.close()
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_client_created_lazily_from_url(self, client):
        with patch(
            "chatguard.app.middleware.security_log.aioredis.from_url", return_value=client
        ) as from_url:
            log = RedisSecurityEventLog(redis_url="redis://cache:6379/1")
            from_url.assert_not_called()
            await log.clear()
            from_url.assert_called_once_with("redis://cache:6379/1")


class TestCreateEventLog:
    """Tests for backend selection."""

    def test_memory_by_default(self):
        config = Settings(_env_file=None, redis_enabled=False, security_event_log_max_entries=42)
        log = create_event_log(config=config)
        assert isinstance(log, InMemorySecurityEventLog)
        assert log.max_entries == 42

    def test_redis_when_enabled(self):
        config = Settings(_env_file=None, redis_enabled=True, security_event_log_key="k")
        log = create_event_log(config=config)
        assert isinstance(log, RedisSecurityEventLog)
        assert log.key == "k"

    def test_explicit_backend_overrides_settings(self):
        config = Settings(_env_file=None, redis_enabled=True)
        assert isinstance(create_event_log("memory", config=config), InMemorySecurityEventLog)
