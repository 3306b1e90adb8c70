"""Attestation token cache and enforcement.

Privileged writes must carry a fresh attestation token proving the caller
is a genuine client instance. This module keeps the most recent token per
cache key for a short TTL (deliberately shorter than the provider's own
token lifetime) and exposes `enforce`, the single choke point every
privileged write passes through.

Guarantees:
- At most one upstream token request per cache key at a time; concurrent
  misses wait on the same request and share its token or its failure
- A failed request never leaves an entry behind
- Enforcement fails closed: it never hands out a token that
  `validate_token` rejects
- Every transition is appended to the security event log, which is only
  ever read for reporting
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Optional

from chatguard.app.core.logging import get_log_context, get_logger
from chatguard.app.exceptions import (
    AttestationError,
    EnforcementError,
    TokenRequestError,
    TokenValidationError,
)
from chatguard.app.middleware.security_log import (
    InMemorySecurityEventLog,
    SecurityEventLog,
)
from chatguard.app.providers.base import AttestationProvider

logger = get_logger(__name__)

DEFAULT_CACHE_KEY = "default"
DEFAULT_TOKEN_TTL_SECONDS = 300

# Stats name -> event kind tallied for it
_STAT_EVENTS = {
    "token_requests": "token_request_start",
    "token_successes": "token_request_success",
    "token_failures": "token_request_failed",
    "validation_failures": "token_validation_failed",
    "enforcement_attempts": "app_check_enforcement",
    "enforcement_successes": "app_check_success",
    "enforcement_failures": "app_check_failed",
    "cache_hits": "token_cache_hit",
}


@dataclass(frozen=True)
class CachedToken:
    """A cached attestation token and its expiry (epoch seconds)."""
    value: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return self.expires_at > now


def _retrieve_exception(task: asyncio.Task) -> None:
    # Waiters may all have gone away; mark the outcome as observed.
    if not task.cancelled():
        task.exception()


class AttestationMiddleware:
    """Caches attestation tokens and enforces them on privileged operations.

    One instance is created per process and passed explicitly to the call
    sites that need it; tests build isolated instances.
    """

    def __init__(
        self,
        provider: AttestationProvider,
        event_log: Optional[SecurityEventLog] = None,
        ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the middleware.

        Args:
            provider: Source of fresh attestation tokens
            event_log: Security event log (in-memory ring buffer if None)
            ttl_seconds: How long a token is served from cache
            clock: Returns the current time in epoch seconds
        """
        self.provider = provider
        self.event_log = event_log if event_log is not None else InMemorySecurityEventLog()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, CachedToken] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        # Bumped by clear_cache so requests started earlier do not repopulate it.
        self._generation = 0

    async def _log(self, event: str, **details: Any) -> None:
        await self.event_log.record(event, details)

    def cached_token(self, cache_key: str = DEFAULT_CACHE_KEY) -> Optional[CachedToken]:
        """Inspect the cache entry for a key without logging or refreshing."""
        return self._cache.get(cache_key)

    async def get_valid_token(
        self,
        force_refresh: bool = False,
        cache_key: str = DEFAULT_CACHE_KEY,
    ) -> str:
        """Return a fresh attestation token, requesting one if needed.

        Args:
            force_refresh: Bypass the cache and request a new token
            cache_key: Cache slot, one per token audience

        Returns:
            The attestation token

        Raises:
            TokenRequestError: If the provider fails to issue a token
        """
        if not force_refresh:
            cached = self._cache.get(cache_key)
            if cached is not None and cached.is_fresh(self._clock()):
                await self._log("token_cache_hit", cached=True, cache_key=cache_key)
                return cached.value

        task = self._inflight.get(cache_key)
        if task is None:
            task = asyncio.create_task(self._request_token(cache_key))
            task.add_done_callback(_retrieve_exception)
            self._inflight[cache_key] = task
            task.add_done_callback(lambda t: self._forget_inflight(cache_key, t))
        else:
            logger.debug(
                "Joining in-flight attestation token request",
                extra=get_log_context(cache_key=cache_key),
            )

        # Shield so an abandoning caller does not cancel the shared request.
        return await asyncio.shield(task)

    def _forget_inflight(self, cache_key: str, task: asyncio.Task) -> None:
        if self._inflight.get(cache_key) is task:
            del self._inflight[cache_key]

    async def _request_token(self, cache_key: str) -> str:
        generation = self._generation
        requested_at = self._clock()
        await self._log("token_request_start", cache_key=cache_key)

        try:
            token = await self.provider.issue_token()
            if not isinstance(token, str) or not token:
                raise TokenRequestError("Attestation provider returned an empty token")
        except TokenRequestError as e:
            await self._log("token_request_failed", cache_key=cache_key, error=e.message)
            raise
        except Exception as e:
            await self._log("token_request_failed", cache_key=cache_key, error=str(e) or type(e).__name__)
            raise TokenRequestError(f"Attestation token request failed: {e}") from e

        if generation == self._generation:
            self._cache[cache_key] = CachedToken(
                value=token, expires_at=requested_at + self.ttl_seconds
            )
        await self._log(
            "token_request_success",
            cache_key=cache_key,
            token_length=len(token),
            cached=False,
        )
        return token

    async def validate_token(self, token: Any) -> bool:
        """Structural check of a token.

        A valid token is a non-empty string of three non-empty,
        dot-separated segments. Cryptographic verification happens at the
        server boundary, not here. Never raises; malformed input of any
        type yields False.
        """
        if not isinstance(token, str):
            reason = "no_token" if token is None else "invalid_type"
            await self._log("token_validation_failed", reason=reason)
            return False

        if not token:
            await self._log("token_validation_failed", reason="no_token")
            return False

        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            await self._log("token_validation_failed", reason="invalid_format")
            return False

        await self._log("token_validation_success")
        return True

    async def enforce(self, operation: str, cache_key: str = DEFAULT_CACHE_KEY) -> str:
        """Require a valid attestation token before a privileged operation.

        Args:
            operation: Name of the privileged operation, for the audit trail
            cache_key: Cache slot to draw the token from

        Returns:
            The token to attach to the privileged request

        Raises:
            EnforcementError: If no valid token can be obtained
        """
        await self._log("app_check_enforcement", operation=operation)

        try:
            token = await self.get_valid_token(cache_key=cache_key)
            if not await self.validate_token(token):
                # Drop the bad token so the next attempt fetches a new one.
                cached = self._cache.get(cache_key)
                if cached is not None and cached.value == token:
                    del self._cache[cache_key]
                raise TokenValidationError()
        except AttestationError as e:
            await self._log("app_check_failed", operation=operation, error=e.message)
            raise EnforcementError(operation, e.message) from e

        await self._log("app_check_success", operation=operation)
        return token

    async def clear_cache(self) -> None:
        """Drop every cached token. The event log is left intact."""
        cleared = len(self._cache)
        self._cache.clear()
        self._generation += 1
        await self._log("token_cache_cleared", entries=cleared)

    async def get_security_stats(self) -> dict[str, int]:
        """Aggregate counters derived solely from the event log."""
        entries = await self.event_log.entries()
        counts = Counter(entry.event for entry in entries)
        stats = {"total_events": len(entries)}
        for name, event in _STAT_EVENTS.items():
            stats[name] = counts[event]
        return stats
