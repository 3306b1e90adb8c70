"""Tests for the attestation token cache and enforcement middleware."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatguard.app.exceptions import EnforcementError, TokenRequestError
from chatguard.app.middleware.attestation import AttestationMiddleware
from chatguard.app.middleware.security_log import (
    InMemorySecurityEventLog,
    RedisSecurityEventLog,
)
from chatguard.app.providers.base import AttestationProvider
from chatguard.app.providers.mock import MockAttestationProvider


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class SequenceProvider(AttestationProvider):
    """Returns a scripted sequence of tokens or exceptions."""

    def __init__(self, results):
        super().__init__("http://attestation.test", "site-key")
        self.results = list(results)
        self.request_count = 0

    async def issue_token(self) -> str:
        self.request_count += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


async def events(middleware):
    return [entry.event for entry in await middleware.event_log.entries()]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return MockAttestationProvider()


@pytest.fixture
def middleware(provider, clock):
    return AttestationMiddleware(provider, clock=clock)


class TestGetValidToken:
    """Tests for token caching."""

    @pytest.mark.asyncio
    async def test_miss_requests_and_caches(self, middleware, provider, clock):
        token = await middleware.get_valid_token()

        assert provider.request_count == 1
        cached = middleware.cached_token()
        assert cached.value == token
        assert cached.expires_at == clock.now + 300
        assert (await events(middleware)) == ["token_request_start", "token_request_success"]

    @pytest.mark.asyncio
    async def test_hit_within_ttl(self, middleware, provider, clock):
        first = await middleware.get_valid_token()
        clock.now += 299
        second = await middleware.get_valid_token()

        assert second == first
        assert provider.request_count == 1
        assert (await events(middleware))[-1] == "token_cache_hit"

    @pytest.mark.asyncio
    async def test_expired_entry_refreshed(self, middleware, provider, clock):
        first = await middleware.get_valid_token()
        clock.now += 300
        second = await middleware.get_valid_token()

        assert second != first
        assert provider.request_count == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, middleware, provider):
        first = await middleware.get_valid_token()
        second = await middleware.get_valid_token(force_refresh=True)

        assert second != first
        assert provider.request_count == 2
        assert middleware.cached_token().value == second

    @pytest.mark.asyncio
    async def test_cache_keys_are_independent(self, middleware, provider):
        a = await middleware.get_valid_token(cache_key="a")
        b = await middleware.get_valid_token(cache_key="b")
        assert a != b
        assert provider.request_count == 2

    @pytest.mark.asyncio
    async def test_failure_leaves_cache_untouched(self, clock):
        provider = SequenceProvider(["a.b.c", RuntimeError("boom")])
        middleware = AttestationMiddleware(provider, clock=clock)

        token = await middleware.get_valid_token()
        with pytest.raises(TokenRequestError) as exc_info:
            await middleware.get_valid_token(force_refresh=True)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert middleware.cached_token().value == token
        assert (await events(middleware))[-1] == "token_request_failed"

    @pytest.mark.asyncio
    async def test_failure_on_empty_cache_stores_nothing(self, clock):
        middleware = AttestationMiddleware(MockAttestationProvider(fail=True), clock=clock)

        with pytest.raises(TokenRequestError):
            await middleware.get_valid_token()
        assert middleware.cached_token() is None

    @pytest.mark.asyncio
    async def test_empty_token_is_request_failure(self, clock):
        middleware = AttestationMiddleware(SequenceProvider([""]), clock=clock)

        with pytest.raises(TokenRequestError):
            await middleware.get_valid_token()
        assert middleware.cached_token() is None

    @pytest.mark.asyncio
    async def test_concurrent_misses_coalesced(self):
        """Two callers on an empty cache share one upstream request."""
        provider = MockAttestationProvider(delay=0.05)
        middleware = AttestationMiddleware(provider)

        first, second = await asyncio.gather(
            middleware.get_valid_token(),
            middleware.get_valid_token(),
        )

        assert first == second
        assert provider.request_count == 1
        assert (await events(middleware)).count("token_request_start") == 1

    @pytest.mark.asyncio
    async def test_concurrent_waiters_share_failure(self):
        provider = MockAttestationProvider(delay=0.05, fail=True)
        middleware = AttestationMiddleware(provider)

        results = await asyncio.gather(
            middleware.get_valid_token(),
            middleware.get_valid_token(),
            middleware.get_valid_token(),
            return_exceptions=True,
        )

        assert all(isinstance(r, TokenRequestError) for r in results)
        assert provider.request_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_request(self):
        provider = MockAttestationProvider(delay=0.05)
        middleware = AttestationMiddleware(provider)

        abandoned = asyncio.create_task(middleware.get_valid_token())
        await asyncio.sleep(0)
        survivor = asyncio.create_task(middleware.get_valid_token())
        await asyncio.sleep(0)
        abandoned.cancel()

        token = await survivor
        assert token
        assert provider.request_count == 1
        assert middleware.cached_token().value == token


class TestValidateToken:
    """Tests for structural token validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["a.b.c", "header.claims.signature"])
    async def test_valid(self, middleware, token):
        assert await middleware.validate_token(token) is True
        assert (await events(middleware)) == ["token_validation_success"]

    @pytest.mark.parametrize(("token", "reason"), [
        (None, "no_token"),
        ("", "no_token"),
        (123, "invalid_type"),
        ("abc", "invalid_format"),
        ("a.b", "invalid_format"),
        ("a.b.c.d", "invalid_format"),
        ("a..c", "invalid_format"),
    ])
    @pytest.mark.asyncio
    async def test_invalid(self, middleware, token, reason):
        assert await middleware.validate_token(token) is False
        entry = (await middleware.event_log.entries())[-1]
        assert entry.event == "token_validation_failed"
        assert entry.details["reason"] == reason


class TestEnforce:
    """Tests for enforcement."""

    @pytest.mark.asyncio
    async def test_success_returns_valid_token(self, middleware):
        token = await middleware.enforce("send_message")

        assert await middleware.validate_token(token) is True
        log = await events(middleware)
        assert log[0] == "app_check_enforcement"
        assert "app_check_success" in log

    @pytest.mark.asyncio
    async def test_provider_failure_blocks(self, clock):
        middleware = AttestationMiddleware(MockAttestationProvider(fail=True), clock=clock)

        with pytest.raises(EnforcementError) as exc_info:
            await middleware.enforce("send_message")

        error = exc_info.value
        assert error.operation == "send_message"
        assert error.error == "app_check_enforcement_failed"
        assert isinstance(error.__cause__, TokenRequestError)
        assert (await events(middleware))[-1] == "app_check_failed"

    @pytest.mark.asyncio
    async def test_malformed_token_never_returned(self, clock):
        """A token that fails validation blocks and is evicted."""
        provider = SequenceProvider(["not-a-jwt", "a.b.c"])
        middleware = AttestationMiddleware(provider, clock=clock)

        with pytest.raises(EnforcementError):
            await middleware.enforce("report_message")
        assert middleware.cached_token() is None

        token = await middleware.enforce("report_message")
        assert token == "a.b.c"
        assert provider.request_count == 2


class TestCacheAndStats:
    """Tests for cache clearing, the event log and statistics."""

    @pytest.mark.asyncio
    async def test_clear_cache(self, middleware, provider):
        await middleware.get_valid_token()
        logged = len(await middleware.event_log.entries())

        await middleware.clear_cache()

        assert middleware.cached_token() is None
        assert len(await middleware.event_log.entries()) == logged + 1
        assert (await events(middleware))[-1] == "token_cache_cleared"

        await middleware.get_valid_token()
        assert provider.request_count == 2

    @pytest.mark.asyncio
    async def test_clear_during_request_not_repopulated(self):
        provider = MockAttestationProvider(delay=0.05)
        middleware = AttestationMiddleware(provider)

        pending = asyncio.create_task(middleware.get_valid_token())
        await asyncio.sleep(0.01)
        await middleware.clear_cache()
        token = await pending

        assert token
        assert middleware.cached_token() is None

    @pytest.mark.asyncio
    async def test_security_stats(self, clock):
        provider = SequenceProvider(["a.b.c", RuntimeError("down")])
        middleware = AttestationMiddleware(provider, clock=clock)

        await middleware.enforce("send_message")        # request + success
        await middleware.enforce("send_message")        # cache hit
        with pytest.raises(TokenRequestError):
            await middleware.get_valid_token(force_refresh=True)
        await middleware.validate_token("bad")

        stats = await middleware.get_security_stats()
        assert stats["token_requests"] == 2
        assert stats["token_successes"] == 1
        assert stats["token_failures"] == 1
        assert stats["cache_hits"] == 1
        assert stats["enforcement_attempts"] == 2
        assert stats["enforcement_successes"] == 2
        assert stats["enforcement_failures"] == 0
        assert stats["validation_failures"] == 1
        assert stats["total_events"] == len(await middleware.event_log.entries())

    @pytest.mark.asyncio
    async def test_event_log_capped(self, clock):
        middleware = AttestationMiddleware(
            MockAttestationProvider(),
            event_log=InMemorySecurityEventLog(max_entries=100),
            clock=clock,
        )
        await middleware.get_valid_token()
        for _ in range(150):
            await middleware.get_valid_token()

        entries = await middleware.event_log.entries()
        assert len(entries) == 100
        assert all(entry.event == "token_cache_hit" for entry in entries)
        assert (await middleware.get_security_stats())["total_events"] == 100

    @pytest.mark.asyncio
    async def test_redis_event_log_awaited(self, clock):
        client = MagicMock()
        client.pipeline.return_value.execute = AsyncMock(return_value=[1, True])
        middleware = AttestationMiddleware(
            MockAttestationProvider(),
            event_log=RedisSecurityEventLog(key="events", redis_client=client),
            clock=clock,
        )

        await middleware.enforce("send_message")

        pushed = [
            json.loads(c.args[1])["event"]
            for c in client.pipeline.return_value.rpush.call_args_list
        ]
        assert pushed == [
            "app_check_enforcement",
            "token_request_start",
            "token_request_success",
            "token_validation_success",
            "app_check_success",
        ]
        assert client.pipeline.return_value.execute.await_count == len(pushed)
