"""Counter stores for the rate limit gate.

A counter store owns the per-key fixed window state. The in-memory store
is the default for single-process deployments; the Redis store shares
counters between worker processes and runs the same algorithm atomically
through a Lua script.

Fixed windows allow a burst of up to 2x max_requests across a window
boundary (N at the end of one window, N at the start of the next).
"""

import asyncio
import math
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis
import redis.asyncio as aioredis

from evidence_gate.app.core.config import Settings, settings as default_settings
from evidence_gate.app.core.logging import get_logger
from evidence_gate.app.middleware.rate_limit.models import (
    CounterEntry,
    RateLimitConfig,
    RateLimitResult,
    now_ms,
)

logger = get_logger(__name__)


class CounterStore(ABC):
    """Abstract base class for counter stores.

    Implementations must make check() atomic per key: concurrent checks on
    the same key may never lose an increment.
    """

    @abstractmethod
    async def check(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[int] = None,
    ) -> RateLimitResult:
        """Count a hit for key and decide whether it is admitted.

        Args:
            key: Rate limit key
            config: Policy to evaluate the hit against
            now: Current time in epoch ms (read from the clock if None)

        Returns:
            RateLimitResult for the post-increment window state
        """
        pass

    @abstractmethod
    async def decrement(self, key: str, reset_time: int) -> None:
        """Uncount one hit for key in the window that counted it.

        Args:
            key: Rate limit key
            reset_time: reset_time of the RateLimitResult the hit produced;
                nothing happens once that window has been replaced
        """
        pass

    @abstractmethod
    async def cleanup(self, now: Optional[int] = None) -> int:
        """Remove expired entries. Returns the number removed."""
        pass

    @abstractmethod
    async def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when key is None."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryCounterStore(CounterStore):
    """In-process fixed window counter store.

    Suitable for single-instance deployments.

    Memory optimization:
    - Expired entries are swept inline during checks, at most once per
      sweep_interval_ms (0 sweeps on every check)
    - The entry count is capped at max_entries. A live entry is never
      dropped before its window ends: once the cap is reached and a sweep
      frees nothing, hits on new keys are rejected until windows expire
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_ms: int = 60_000,
    ):
        self._max_entries = max_entries
        self._sweep_interval_ms = sweep_interval_ms
        self._entries: dict[str, CounterEntry] = {}
        self._last_sweep = 0
        # Lower bound on the reset_time of every stored entry
        self._earliest_reset: float = math.inf
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[CounterEntry]:
        """Return the stored entry for key without counting a hit."""
        return self._entries.get(key)

    def _sweep(self, now: int) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        self._earliest_reset = min(
            (entry.reset_time for entry in self._entries.values()),
            default=math.inf,
        )
        return len(expired)

    def _has_capacity(self, now: int) -> bool:
        """Whether a new key fits, sweeping first if anything has expired."""
        if len(self._entries) < self._max_entries:
            return True
        if self._earliest_reset < now:
            self._sweep(now)
        return len(self._entries) < self._max_entries

    async def check(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[int] = None,
    ) -> RateLimitResult:
        async with self._lock:
            now = now_ms() if now is None else now

            if now - self._last_sweep >= self._sweep_interval_ms:
                self._sweep(now)

            entry = self._entries.get(key)
            if entry is None and not self._has_capacity(now):
                logger.warning(
                    "Rate limit store full, rejecting new key",
                    extra={"rate_limit_key": key, "max_entries": self._max_entries},
                )
                return RateLimitResult.from_counter(
                    count=config.max_requests + 1,
                    reset_time=now + config.window_ms,
                    max_requests=config.max_requests,
                    now=now,
                )

            if entry is None or entry.is_expired(now):
                # New window
                entry = CounterEntry(count=1, reset_time=now + config.window_ms)
                self._entries[key] = entry
                self._earliest_reset = min(self._earliest_reset, entry.reset_time)
            else:
                entry.count += 1

            return RateLimitResult.from_counter(
                count=entry.count,
                reset_time=entry.reset_time,
                max_requests=config.max_requests,
                now=now,
            )

    async def decrement(self, key: str, reset_time: int) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_time != reset_time:
                return
            entry.count = max(0, entry.count - 1)

    async def cleanup(self, now: Optional[int] = None) -> int:
        async with self._lock:
            return self._sweep(now_ms() if now is None else now)

    async def reset(self, key: Optional[str] = None) -> None:
        async with self._lock:
            if key is None:
                self._entries.clear()
                self._earliest_reset = math.inf
            else:
                self._entries.pop(key, None)


# Atomic fixed window hit. Each key is a hash holding the hit count and the
# window's reset_time, which also identifies the window for decrements.
# ARGV: window_ms, reset_time for a window started by this hit.
CHECK_SCRIPT = """
    local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
    local reset = redis.call('HGET', KEYS[1], 'reset')
    if count == 1 or not reset or redis.call('PTTL', KEYS[1]) < 0 then
        reset = ARGV[2]
        redis.call('HSET', KEYS[1], 'reset', reset)
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    return {count, reset}
"""

# Decrement only the window identified by ARGV[1], never below zero
DECREMENT_SCRIPT = """
    if redis.call('HGET', KEYS[1], 'reset') ~= ARGV[1] then
        return 0
    end
    local count = tonumber(redis.call('HGET', KEYS[1], 'count'))
    if count and count > 0 then
        return redis.call('HINCRBY', KEYS[1], 'count', -1)
    end
    return 0
"""


class RedisCounterStore(CounterStore):
    """Redis-based distributed counter store.

    Each key is a Redis hash that expires with its window, so Redis
    performs the expiry sweep itself. Redis failures are handled with the
    configurable fail-open / fail-closed policy.
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        fail_closed: Optional[bool] = None,
        key_prefix: str = "evidence_gate:",
    ):
        """Initialize Redis counter store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL (defaults to settings.redis_url)
            fail_closed: Reject on Redis errors (defaults to
                settings.rate_limit_fail_closed)
            key_prefix: Namespace prepended to every counter key
        """
        self._redis = redis_client
        self._redis_url = redis_url or default_settings.redis_url
        self._fail_closed = (
            default_settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        )
        self._key_prefix = key_prefix

    def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def check(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[int] = None,
    ) -> RateLimitResult:
        now = now_ms() if now is None else now
        try:
            client = self._get_redis()
            count, reset_time = await client.eval(
                CHECK_SCRIPT,
                1,
                self._key_prefix + key,
                config.window_ms,
                now + config.window_ms,
            )
        except redis.RedisError as e:
            logger.error(f"Redis rate limit check failed: {e}")
            return self._handle_redis_failure(config, now)

        return RateLimitResult.from_counter(
            count=int(count),
            reset_time=int(reset_time),
            max_requests=config.max_requests,
            now=now,
        )

    def _handle_redis_failure(self, config: RateLimitConfig, now: int) -> RateLimitResult:
        """Decide a request when Redis cannot be reached.

        Fail-closed rejects the request; fail-open (default) admits it
        without counting it.
        """
        reset_time = now + config.window_ms
        if self._fail_closed:
            logger.warning("Rate limiting fail-closed triggered. Request denied.")
            return RateLimitResult.from_counter(
                count=config.max_requests + 1,
                reset_time=reset_time,
                max_requests=config.max_requests,
                now=now,
            )

        logger.warning(
            "Rate limiting fail-open triggered. "
            "Request allowed without rate limit check."
        )
        return RateLimitResult.from_counter(
            count=0,
            reset_time=reset_time,
            max_requests=config.max_requests,
            now=now,
        )

    async def decrement(self, key: str, reset_time: int) -> None:
        try:
            await self._get_redis().eval(
                DECREMENT_SCRIPT, 1, self._key_prefix + key, reset_time
            )
        except redis.RedisError as e:
            logger.warning(f"Redis rate limit decrement failed: {e}")

    async def cleanup(self, now: Optional[int] = None) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def reset(self, key: Optional[str] = None) -> None:
        client = self._get_redis()
        if key is not None:
            await client.delete(self._key_prefix + key)
            return
        async for stored_key in client.scan_iter(match=f"{self._key_prefix}*"):
            await client.delete(stored_key)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_counter_store(
    settings: Optional[Settings] = None,
    use_redis: Optional[bool] = None,
) -> CounterStore:
    """Create the counter store selected by configuration.

    Args:
        settings: Settings to read (defaults to the global instance)
        use_redis: Force Redis usage (None = auto-detect from settings)
    """
    settings = settings or default_settings
    should_use_redis = use_redis if use_redis is not None else settings.redis_enabled

    if should_use_redis:
        logger.info("Using Redis rate limit counter store")
        return RedisCounterStore(
            redis_url=settings.redis_url,
            fail_closed=settings.rate_limit_fail_closed,
        )

    logger.debug("Using in-memory rate limit counter store")
    return InMemoryCounterStore(
        max_entries=settings.rate_limit_max_entries,
        sweep_interval_ms=settings.rate_limit_sweep_interval_ms,
    )
