"""Rate limiting data models.

This module contains dataclasses for rate limit policy, counter state and
check results. All timestamps are epoch milliseconds.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from starlette.requests import Request

KeyGenerator = Callable[[Request], str]
LimitReachedCallback = Callable[[Request], Any]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable rate limit policy.

    Attributes:
        window_ms: Window duration in milliseconds
        max_requests: Requests admitted per window
        key_generator: Overrides the default client+path+user-agent key
        on_limit_reached: Called with the request whenever it is rejected
        skip_successful_requests: Uncount requests answered with status < 400
        skip_failed_requests: Uncount requests answered with status >= 400
            or whose handler raised
        name: Policy name, used in logs
    """
    window_ms: int
    max_requests: int
    key_generator: Optional[KeyGenerator] = None
    on_limit_reached: Optional[LimitReachedCallback] = None
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")


@dataclass
class CounterEntry:
    """Per-key fixed window state."""
    count: int
    reset_time: int

    def is_expired(self, now: int) -> bool:
        return self.reset_time < now


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    total_hits: int
    retry_after: int = 0

    @property
    def reset_seconds(self) -> int:
        """Window end as unix seconds, for the X-RateLimit-Reset header."""
        return math.ceil(self.reset_time / 1000)

    @classmethod
    def from_counter(
        cls,
        count: int,
        reset_time: int,
        max_requests: int,
        now: int,
    ) -> "RateLimitResult":
        """Build a result from the post-increment count of a window."""
        return cls(
            allowed=count <= max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_time=reset_time,
            total_hits=count,
            retry_after=max(0, math.ceil((reset_time - now) / 1000)),
        )
