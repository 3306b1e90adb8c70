"""Per-session submission rate limiting.

Each chat session gets a burst allowance: a handful of messages inside a
sliding burst window, then a fixed cooldown once the allowance is
exceeded. The limiter is advisory spam prevention for honest clients,
not a security boundary.

The state machine itself is the pure function `apply_submission`, so it
can be exercised without clocks; `SubmissionRateLimiter` owns the clock
and the per-session state.
"""

import asyncio
import math
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Optional, Tuple

from chatguard.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Burst parameters, all durations in milliseconds."""
    burst_window_ms: int = 120_000
    max_submissions: int = 3
    cooldown_ms: int = 30_000

    @classmethod
    def from_settings(cls, settings) -> "RateLimitConfig":
        return cls(
            burst_window_ms=settings.rate_limit_burst_window_ms,
            max_submissions=settings.rate_limit_max_submissions,
            cooldown_ms=settings.rate_limit_cooldown_ms,
        )


@dataclass(frozen=True)
class RateLimitState:
    """Submission history of one session (epoch milliseconds)."""
    last_submit_time: float = 0
    submission_count: int = 0
    cooldown_until: float = 0

    def in_cooldown(self, now: float) -> bool:
        return now < self.cooldown_until


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check.

    `retry_after` is the remaining cooldown in whole seconds (rounded up)
    and is only set for rejected attempts.
    """
    allowed: bool
    retry_after: Optional[int] = None
    cooldown_armed: bool = False


def remaining_cooldown_seconds(state: RateLimitState, now: float) -> int:
    """Seconds until the session may submit again, 0 when not cooling down."""
    remaining = math.ceil((state.cooldown_until - now) / 1000)
    return remaining if remaining > 0 else 0


def apply_submission(
    state: RateLimitState,
    now: float,
    config: RateLimitConfig = RateLimitConfig(),
) -> Tuple[RateLimitState, RateLimitDecision]:
    """Evaluate one submission attempt at time `now`.

    Transitions:
    - cooling down: reject, state unchanged
    - gap since last submission > burst window: count restarts at 1
    - otherwise the count increments
    - count > max submissions: arm cooldown, reset count to 0 and reject
      this very attempt
    - else allow and record the submission time and count

    Args:
        state: Current session state
        now: Attempt time in epoch milliseconds
        config: Burst parameters

    Returns:
        Tuple of (next_state, decision)
    """
    if state.in_cooldown(now):
        return state, RateLimitDecision(
            allowed=False, retry_after=remaining_cooldown_seconds(state, now)
        )

    if now - state.last_submit_time > config.burst_window_ms:
        count = 1
    else:
        count = state.submission_count + 1

    if count > config.max_submissions:
        armed = replace(
            state,
            submission_count=0,
            cooldown_until=now + config.cooldown_ms,
        )
        return armed, RateLimitDecision(
            allowed=False,
            retry_after=remaining_cooldown_seconds(armed, now),
            cooldown_armed=True,
        )

    accepted = replace(state, last_submit_time=now, submission_count=count)
    return accepted, RateLimitDecision(allowed=True)


def _wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class RateLimitTicket:
    """An allowed attempt waiting to be recorded.

    Returned by `SubmissionRateLimiter.check`; pass it to `record` once the
    message content has been accepted.
    """
    session_id: str
    decision: RateLimitDecision
    next_state: RateLimitState


class SubmissionRateLimiter:
    """Session-keyed registry around `apply_submission`.

    Memory optimization:
    - Uses OrderedDict for LRU behavior
    - Limits max sessions to prevent unbounded memory growth
    - Evicts the oldest 20% of sessions when the limit is exceeded
    """

    DEFAULT_MAX_SESSIONS = 10000

    def __init__(
        self,
        config: RateLimitConfig = RateLimitConfig(),
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = _wall_clock_ms,
    ):
        """Initialize the limiter.

        Args:
            config: Burst parameters
            max_sessions: Maximum number of sessions to track (LRU eviction)
            clock: Returns the current time in epoch milliseconds
        """
        self.config = config
        self._max_sessions = max_sessions
        self._clock = clock
        self._states: OrderedDict[str, RateLimitState] = OrderedDict()
        self._session_locks: dict[str, asyncio.Lock] = {}

    def _enforce_lru_limit(self) -> None:
        if len(self._states) > self._max_sessions:
            remove_count = max(1, int(self._max_sessions * 0.2))
            for _ in range(remove_count):
                session_id, _ = self._states.popitem(last=False)
                lock = self._session_locks.get(session_id)
                if lock is not None and not lock.locked():
                    del self._session_locks[session_id]

    def get_state(self, session_id: str) -> RateLimitState:
        """Current state for a session (a fresh state if unknown)."""
        return self._states.get(session_id, RateLimitState())

    def _store(self, session_id: str, state: RateLimitState) -> None:
        self._states[session_id] = state
        self._states.move_to_end(session_id)
        self._enforce_lru_limit()

    @asynccontextmanager
    async def session_lock(self, session_id: str) -> AsyncIterator[None]:
        """Serialize submissions of one session.

        A session's attempts are evaluated strictly one after another;
        different sessions never contend.
        """
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            yield

    def check(self, session_id: str) -> RateLimitTicket:
        """Evaluate a submission attempt without recording it.

        A cooldown armed by this attempt is committed immediately. An
        allowed attempt only takes effect once passed to `record`.
        """
        now = self._clock()
        next_state, decision = apply_submission(
            self.get_state(session_id), now, self.config
        )

        if decision.cooldown_armed:
            self._store(session_id, next_state)
            logger.warning(
                f"Burst limit exceeded, cooldown armed for {decision.retry_after}s",
                extra=get_log_context(
                    session_id=session_id, retry_after=decision.retry_after
                ),
            )
        elif not decision.allowed:
            logger.info(
                "Submission rejected during cooldown",
                extra=get_log_context(
                    session_id=session_id, retry_after=decision.retry_after
                ),
            )

        return RateLimitTicket(
            session_id=session_id, decision=decision, next_state=next_state
        )

    def record(self, ticket: RateLimitTicket) -> None:
        """Commit an allowed attempt returned by `check`."""
        if not ticket.decision.allowed:
            return
        self._store(ticket.session_id, ticket.next_state)

    def peek(self, session_id: str) -> int:
        """Remaining cooldown seconds for a session, without mutating state."""
        return remaining_cooldown_seconds(self.get_state(session_id), self._clock())

    def reset(self, session_id: str) -> None:
        """Forget a session's history."""
        self._states.pop(session_id, None)

    def cleanup(self) -> int:
        """Drop sessions that are idle past the burst window and not cooling down.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        expired = [
            session_id for session_id, state in self._states.items()
            if not state.in_cooldown(now)
            and now - state.last_submit_time > self.config.burst_window_ms
        ]
        for session_id in expired:
            del self._states[session_id]

        idle_locks = [
            session_id for session_id, lock in self._session_locks.items()
            if session_id not in self._states and not lock.locked()
        ]
        for session_id in idle_locks:
            del self._session_locks[session_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._states)
