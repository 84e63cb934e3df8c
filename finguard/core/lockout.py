"""Brute-force lockout.

Tracks failed attempts per identifier (username or user id) and enforces a
temporary lockout once the threshold is reached:

    Clear -> Warning (count < threshold) -> Locked (until now + duration) -> Clear

A lock clears after a successful authentication or once ``locked_until``
passes; an elapsed lock resets the counter entirely. Counter updates are
atomic per identifier:
- In-memory storage (single worker) with a per-identifier asyncio lock
- Redis storage (several workers) with a Lua script
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from finguard.config import Settings, get_settings
from finguard.core.clock import Clock, utcnow
from finguard.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LockoutState:
    """Failure counter for one identifier."""

    identifier: str
    failure_count: int = 0
    locked_until: datetime | None = None
    last_failure_at: datetime | None = None

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass(frozen=True)
class FailureOutcome:
    """Result of recording one failure.

    ``locked_now`` is True for exactly one failure per lockout: the one that
    crossed the threshold.
    """

    failure_count: int
    locked_until: datetime | None
    locked_now: bool


def _is_stale(state: LockoutState, now: datetime, window: timedelta) -> bool:
    """Elapsed lock, or an unlocked counter whose last failure left the window."""
    if state.locked_until is not None:
        return state.locked_until <= now
    return state.last_failure_at is not None and now - state.last_failure_at > window


class LockoutStore(ABC):
    """Abstract storage for lockout counters."""

    @abstractmethod
    async def record_failure(
        self,
        identifier: str,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
        window: timedelta,
    ) -> FailureOutcome:
        """Atomically count one failure and lock on reaching ``threshold``.

        A stale state (elapsed lock, or last failure outside ``window``) is
        reset before counting. Failures while locked are counted but never
        extend the lock.
        """

    @abstractmethod
    async def get(self, identifier: str, now: datetime, window: timedelta) -> Optional[LockoutState]:
        """Current state, or None when clear (stale states read as clear)."""

    @abstractmethod
    async def clear(self, identifier: str) -> None:
        """Drop all state for ``identifier``."""

    @abstractmethod
    async def purge_expired(self, now: datetime, window: timedelta) -> int:
        """Remove stale states. Returns the number removed."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryLockoutStore(LockoutStore):
    """Process-local lockout counters.

    Suitable for development and single-worker deployments. The
    per-identifier lock covers only the read-modify-write of the counter.
    """

    def __init__(self):
        self._states: dict[str, LockoutState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, identifier: str) -> asyncio.Lock:
        lock = self._locks.get(identifier)
        if lock is None:
            lock = self._locks[identifier] = asyncio.Lock()
        return lock

    async def record_failure(
        self,
        identifier: str,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
        window: timedelta,
    ) -> FailureOutcome:
        async with self._lock_for(identifier):
            state = self._states.get(identifier)
            if state is None or _is_stale(state, now, window):
                state = LockoutState(identifier=identifier)
                self._states[identifier] = state

            state.failure_count += 1
            state.last_failure_at = now

            locked_now = False
            if not state.is_locked_at(now) and state.failure_count >= threshold:
                state.locked_until = now + lock_duration
                locked_now = True

            return FailureOutcome(
                failure_count=state.failure_count,
                locked_until=state.locked_until,
                locked_now=locked_now,
            )

    async def get(self, identifier: str, now: datetime, window: timedelta) -> Optional[LockoutState]:
        async with self._lock_for(identifier):
            state = self._states.get(identifier)
            if state is None:
                return None
            if _is_stale(state, now, window):
                del self._states[identifier]
                return None
            return LockoutState(
                identifier=state.identifier,
                failure_count=state.failure_count,
                locked_until=state.locked_until,
                last_failure_at=state.last_failure_at,
            )

    async def clear(self, identifier: str) -> None:
        async with self._lock_for(identifier):
            self._states.pop(identifier, None)

    async def purge_expired(self, now: datetime, window: timedelta) -> int:
        removed = 0
        for identifier in list(self._states):
            async with self._lock_for(identifier):
                state = self._states.get(identifier)
                if state is not None and _is_stale(state, now, window):
                    del self._states[identifier]
                    removed += 1
            lock = self._locks.get(identifier)
            if identifier not in self._states and lock is not None and not lock.locked():
                del self._locks[identifier]
        return removed


class RedisLockoutStore(LockoutStore):
    """Redis-backed lockout counters shared by every worker.

    Uses a Lua script so reset, increment and lock happen atomically.
    Keys carry a TTL, so Redis expires stale counters on its own.
    """

    RECORD_FAILURE_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local threshold = tonumber(ARGV[2])
    local lock_seconds = tonumber(ARGV[3])
    local window_seconds = tonumber(ARGV[4])

    local state = redis.call('HMGET', key, 'count', 'locked_until', 'last_failure')
    local count = tonumber(state[1]) or 0
    local locked_until = tonumber(state[2]) or 0
    local last_failure = tonumber(state[3]) or 0

    -- Elapsed lock or stale window: start over
    if locked_until > 0 and locked_until <= now then
        count = 0
        locked_until = 0
    elseif locked_until == 0 and last_failure > 0 and now - last_failure > window_seconds then
        count = 0
    end

    count = count + 1
    local locked_now = 0
    if locked_until <= now and count >= threshold then
        locked_until = now + lock_seconds
        locked_now = 1
    end

    redis.call('HSET', key, 'count', count, 'locked_until', locked_until, 'last_failure', now)
    redis.call('EXPIRE', key, math.ceil(math.max(lock_seconds, window_seconds)) * 2)
    return {count, tostring(locked_until), locked_now}
    """

    KEY_PREFIX = "lockout:"

    def __init__(self, redis_url: Optional[str] = None):
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._redis = None
        self._script_sha = None

    async def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._script_sha = await self._redis.script_load(self.RECORD_FAILURE_SCRIPT)
        return self._redis

    @staticmethod
    def _to_datetime(value) -> datetime | None:
        seconds = float(value or 0)
        if seconds <= 0:
            return None
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    async def record_failure(
        self,
        identifier: str,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
        window: timedelta,
    ) -> FailureOutcome:
        redis = await self._get_redis()
        count, locked_until, locked_now = await redis.evalsha(
            self._script_sha,
            1,
            f"{self.KEY_PREFIX}{identifier}",
            str(now.timestamp()),
            str(threshold),
            str(lock_duration.total_seconds()),
            str(window.total_seconds()),
        )
        return FailureOutcome(
            failure_count=int(count),
            locked_until=self._to_datetime(locked_until),
            locked_now=bool(int(locked_now)),
        )

    async def get(self, identifier: str, now: datetime, window: timedelta) -> Optional[LockoutState]:
        redis = await self._get_redis()
        raw = await redis.hgetall(f"{self.KEY_PREFIX}{identifier}")
        if not raw:
            return None
        state = LockoutState(
            identifier=identifier,
            failure_count=int(raw.get("count", 0)),
            locked_until=self._to_datetime(raw.get("locked_until")),
            last_failure_at=self._to_datetime(raw.get("last_failure")),
        )
        # Stale states are reset by the next record_failure
        if _is_stale(state, now, window):
            return None
        return state

    async def clear(self, identifier: str) -> None:
        redis = await self._get_redis()
        await redis.delete(f"{self.KEY_PREFIX}{identifier}")

    async def purge_expired(self, now: datetime, window: timedelta) -> int:
        # Keys expire through their TTL
        return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class BruteForceGuard:
    """Per-identifier failure accounting with temporary lockout."""

    def __init__(
        self,
        store: Optional[LockoutStore] = None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryLockoutStore()
        self.clock = clock
        self.threshold = self.settings.lockout_threshold
        self.lock_duration = timedelta(minutes=self.settings.lockout_duration_minutes)
        self.window = timedelta(minutes=self.settings.lockout_failure_window_minutes)

    @staticmethod
    def _key(identifier: str) -> str:
        return identifier.strip().lower()

    async def allow_attempt(self, identifier: str) -> bool:
        """False while the identifier is locked, even for a correct credential."""
        state = await self.store.get(self._key(identifier), self.clock(), self.window)
        return state is None or not state.is_locked_at(self.clock())

    async def record_failure(self, identifier: str) -> FailureOutcome:
        outcome = await self.store.record_failure(
            self._key(identifier),
            self.clock(),
            self.threshold,
            self.lock_duration,
            self.window,
        )
        if outcome.locked_now:
            logger.warning(
                "Identifier locked after repeated failures",
                identifier=identifier,
                failure_count=outcome.failure_count,
                locked_until=outcome.locked_until.isoformat(),
            )
        return outcome

    async def record_success(self, identifier: str) -> None:
        """Clear state regardless of the current phase."""
        await self.store.clear(self._key(identifier))

    async def remaining_attempts(self, identifier: str) -> int:
        """Failures left before lockout; 0 while locked."""
        now = self.clock()
        state = await self.store.get(self._key(identifier), now, self.window)
        if state is None:
            return self.threshold
        if state.is_locked_at(now):
            return 0
        return max(0, self.threshold - state.failure_count)

    async def lockout_expiry(self, identifier: str) -> datetime | None:
        """When the current lock ends, or None if not locked."""
        now = self.clock()
        state = await self.store.get(self._key(identifier), now, self.window)
        if state is None or not state.is_locked_at(now):
            return None
        return state.locked_until

    async def purge_expired(self) -> int:
        return await self.store.purge_expired(self.clock(), self.window)
