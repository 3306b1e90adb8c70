"""Security event log for the attestation middleware.

An append-only, capped ring buffer of attestation events (oldest entries
evicted first). The log is purely observational: it feeds statistics and
inspection endpoints and is never consulted to admit or refuse anything.

Backends:
- InMemorySecurityEventLog: process-local deque (default)
- RedisSecurityEventLog: Redis list shared across restarts
"""

import json
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from chatguard.app.core.context import get_client_context
from chatguard.app.core.logging import get_logger

logger = get_logger("chatguard.security")

DEFAULT_MAX_ENTRIES = 100


@dataclass
class SecurityEvent:
    """One entry of the security event log."""
    event: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    details: dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    origin: Optional[str] = None

    @classmethod
    def create(cls, event: str, details: Optional[dict[str, Any]] = None) -> "SecurityEvent":
        """Build an event stamped with the current client context."""
        context = get_client_context()
        metadata = context.as_metadata() if context else {}
        return cls(event=event, details=dict(details or {}), **metadata)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityEvent":
        return cls(
            event=data["event"],
            timestamp=data.get("timestamp", ""),
            details=data.get("details") or {},
            session_id=data.get("session_id"),
            user_agent=data.get("user_agent"),
            origin=data.get("origin"),
        )


class SecurityEventLog(ABC):
    """Abstract base class for security event log backends."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries

    async def record(self, event: str, details: Optional[dict[str, Any]] = None) -> SecurityEvent:
        """Create, emit and append an event.

        Args:
            event: Event kind, e.g. "token_cache_hit"
            details: Event specific details

        Returns:
            The appended SecurityEvent
        """
        entry = SecurityEvent.create(event, details)
        level = logger.warning if event.endswith("_failed") else logger.info
        level(
            f"Security event: {event}",
            extra={"event": event, "session_id": entry.session_id, "details": entry.details},
        )
        await self.append(entry)
        return entry

    @abstractmethod
    async def append(self, entry: SecurityEvent) -> None:
        """Append an entry, evicting the oldest beyond `max_entries`."""
        pass

    @abstractmethod
    async def entries(self) -> list[SecurityEvent]:
        """All retained entries, oldest first."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove all entries."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemorySecurityEventLog(SecurityEventLog):
    """Process-local ring buffer."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        super().__init__(max_entries)
        self._entries: deque[SecurityEvent] = deque(maxlen=max_entries)

    async def append(self, entry: SecurityEvent) -> None:
        self._entries.append(entry)

    async def entries(self) -> list[SecurityEvent]:
        return list(self._entries)

    async def clear(self) -> None:
        self._entries.clear()


class RedisSecurityEventLog(SecurityEventLog):
    """Ring buffer kept in a Redis list.

    Entries are JSON documents; RPUSH and LTRIM run in one pipeline so
    the list never exceeds `max_entries`. Redis outages only cost
    observability, so they are logged and otherwise ignored.

    Example:
        >>> log = RedisSecurityEventLog("redis://localhost:6379/0")
        >>> await log.record("token_cache_hit")
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key: str = "chatguard:security_events",
        max_entries: int = DEFAULT_MAX_ENTRIES,
        redis_client: Optional[Any] = None,
    ):
        super().__init__(max_entries)
        self.key = key
        self._redis_url = redis_url
        self._redis = redis_client

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def append(self, entry: SecurityEvent) -> None:
        try:
            pipe = self._get_client().pipeline(transaction=True)
            pipe.rpush(self.key, json.dumps(entry.to_dict(), default=str))
            pipe.ltrim(self.key, -self.max_entries, -1)
            await pipe.execute()
        except RedisError as e:
            logger.warning(f"Failed to persist security event {entry.event}: {e}")

    async def entries(self) -> list[SecurityEvent]:
        try:
            raw_entries = await self._get_client().lrange(self.key, 0, -1)
        except RedisError as e:
            logger.warning(f"Failed to read security events: {e}")
            return []

        result = []
        for raw in raw_entries:
            try:
                result.append(SecurityEvent.from_dict(json.loads(raw)))
            except (json.JSONDecodeError, KeyError, TypeError, UnicodeDecodeError):
                # Corrupt entry, skip it
                continue
        return result

    async def clear(self) -> None:
        try:
            await self._get_client().delete(self.key)
        except RedisError as e:
            logger.warning(f"Failed to clear security events: {e}")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_event_log(
    backend: Optional[str] = None,
    redis_url: Optional[str] = None,
    config: Optional[Any] = None,
) -> SecurityEventLog:
    """Create a security event log for the configured backend.

    Args:
        backend: 'memory', 'redis', or None to follow config.redis_enabled
        redis_url: Redis connection URL. Defaults to config.redis_url.
        config: Settings to read (module settings if None)

    Returns:
        A SecurityEventLog instance
    """
    if config is None:
        # Import settings here to avoid circular imports
        from chatguard.app.core.config import settings as config

    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    else:
        use_redis = config.redis_enabled

    if use_redis:
        return RedisSecurityEventLog(
            redis_url=redis_url or config.redis_url,
            key=config.security_event_log_key,
            max_entries=config.security_event_log_max_entries,
        )
    return InMemorySecurityEventLog(max_entries=config.security_event_log_max_entries)
