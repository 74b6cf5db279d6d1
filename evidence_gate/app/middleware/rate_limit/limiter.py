"""The rate limit gate shared by the middleware, decorator and dependency."""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.requests import Request

from evidence_gate.app.core.config import settings
from evidence_gate.app.core.logging import get_log_context, get_logger
from evidence_gate.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
)
from evidence_gate.app.middleware.rate_limit.keys import (
    default_key_generator,
    get_client_ip,
)
from evidence_gate.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitResult,
    now_ms,
)
from evidence_gate.app.middleware.request_id import get_request_id

logger = get_logger(__name__)


@dataclass
class RateLimitCheck:
    """A counted hit: the key it was counted under and the decision."""
    key: str
    config: RateLimitConfig
    result: RateLimitResult

    @property
    def allowed(self) -> bool:
        return self.result.allowed


class RateLimiter:
    """Rate limit gate over an injected counter store.

    Derives the key for a request, counts the hit and renders the decision.
    Each limiter owns its store; nothing is shared through module state, so
    independent limiters never see each other's counters.
    """

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the gate.

        Args:
            store: Counter store (defaults to a private in-memory store)
            clock: Returns the current time in epoch ms; read once per hit
        """
        if store is None:
            store = InMemoryCounterStore(
                max_entries=settings.rate_limit_max_entries,
                sweep_interval_ms=settings.rate_limit_sweep_interval_ms,
            )
        self.store = store
        self._clock = clock
        self._pending_callbacks: set[asyncio.Task] = set()

    def derive_key(self, request: Request, config: RateLimitConfig) -> str:
        """Compute the counter key, honoring the policy's key generator."""
        if config.key_generator is not None:
            return config.key_generator(request)
        return default_key_generator(request)

    async def check(
        self,
        key: str,
        config: RateLimitConfig,
        now: Optional[int] = None,
    ) -> RateLimitResult:
        """Count a hit for an already derived key."""
        return await self.store.check(key, config, self._clock() if now is None else now)

    async def hit(self, request: Request, config: RateLimitConfig) -> RateLimitCheck:
        """Count a request against config and decide admit or reject.

        The counter is updated here, before any handler runs, so the
        bookkeeping happens whatever the handler later does.
        """
        key = self.derive_key(request, config)
        result = await self.check(key, config)

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    request_id=get_request_id(request),
                    client_ip=get_client_ip(request),
                    policy=config.name,
                    rate_limit_key=key,
                    path=request.url.path,
                    method=request.method,
                    total_hits=result.total_hits,
                ),
            )
            if config.on_limit_reached is not None:
                self._notify_limit_reached(request, config)

        return RateLimitCheck(key=key, config=config, result=result)

    async def settle(self, check: RateLimitCheck, status_code: Optional[int]) -> None:
        """Apply outcome-aware counting once the handler has resolved.

        A skipped hit is uncounted only in the window that counted it; if
        that window ended while the handler ran, nothing changes.

        Args:
            check: The admitted hit
            status_code: Response status, or None if the handler raised
        """
        config = check.config
        failed = status_code is None or status_code >= 400
        if failed and config.skip_failed_requests:
            await self.store.decrement(check.key, check.result.reset_time)
        elif not failed and config.skip_successful_requests:
            await self.store.decrement(check.key, check.result.reset_time)

    def _notify_limit_reached(self, request: Request, config: RateLimitConfig) -> None:
        """Invoke on_limit_reached without letting it affect the decision.

        Awaitable results are scheduled and not awaited.
        """
        try:
            outcome = config.on_limit_reached(request)
        except Exception:
            logger.exception(
                "on_limit_reached callback failed",
                extra=get_log_context(policy=config.name, path=request.url.path),
            )
            return

        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending_callbacks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._pending_callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "on_limit_reached callback failed",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def close(self) -> None:
        """Close the underlying store."""
        await self.store.close()
