"""
Sliding-window rate limiter for the QuickBooks Online API.

QBO allows roughly 500 requests per minute per realm; the default cap of
450/60s leaves headroom for other clients sharing the realm.

How the window works:
- Every grant records a timestamp.
- Timestamps older than the window are evicted before each decision.
- If the window already holds ``max_calls`` grants, the caller sleeps until
  the oldest grant ages out, then re-evaluates (other callers may have
  taken the freed slot in the meantime).

The grant sequence is guarded by a short, I/O-free critical section; no
lock is held while a caller sleeps. Admission is computed from the oldest
timestamp only, so ordering between waiters is roughly FIFO but not strict
under heavy contention.

Usage::

    limiter = SlidingWindowRateLimiter(max_calls=450, window_seconds=60)

    await limiter.acquire()
    result = await make_request()

    # Returns the slot if the request is cancelled before it starts
    async with limiter.reserve() as grant:
        grant.mark_started()
        result = await make_request()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from qbolink.exceptions import RateLimitTimeoutError

logger = logging.getLogger("qbolink.resilience.rate_limiter")

# Default QBO budget: 450 requests per rolling minute
DEFAULT_MAX_CALLS = 450
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(eq=False)
class Grant:
    """One admitted call. Identity matters: releasing removes this exact grant."""

    granted_at: float
    started: bool = field(default=False)

    def mark_started(self) -> None:
        """Record that the network call has begun; the slot is now spent."""
        self.started = True


class SlidingWindowRateLimiter:
    """Caps grants at ``max_calls`` per rolling ``window_seconds``.

    Args:
        max_calls: Maximum grants inside any trailing window.
        window_seconds: Length of the window.
        name: Label used in log messages.
        clock: Monotonic time source in seconds.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        name: str = "qbo_api",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError(f"max_calls must be >= 1, got {max_calls}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")

        self.max_calls = max_calls
        self.window_seconds = float(window_seconds)
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._grants: deque[Grant] = deque()
        self._lock = threading.Lock()
        self._total_granted = 0
        self._total_waits = 0

        logger.debug(
            "Rate limiter '%s' initialized: %d calls / %.1fs",
            name,
            max_calls,
            window_seconds,
        )

    # ------------------------------------------------------------------
    # Critical section
    # ------------------------------------------------------------------

    def _evict(self, now: float) -> None:
        while self._grants and now - self._grants[0].granted_at >= self.window_seconds:
            self._grants.popleft()

    def _try_grant(self) -> tuple[Grant | None, float]:
        """Grant a slot, or return how long to wait before trying again."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._grants) < self.max_calls:
                grant = Grant(granted_at=now)
                self._grants.append(grant)
                self._total_granted += 1
                return grant, 0.0
            oldest = self._grants[0].granted_at
            return None, max(self.window_seconds - (now - oldest), 0.0)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _acquire(self) -> Grant:
        while True:
            grant, wait = self._try_grant()
            if grant is not None:
                return grant
            self._total_waits += 1
            logger.debug("Rate limit reached for '%s', waiting %.3fs", self.name, wait)
            await self._sleep(wait)

    async def acquire(self, *, timeout: float | None = None) -> Grant:
        """Wait for a slot and return the grant.

        Raises:
            RateLimitTimeoutError: If ``timeout`` passes before a slot frees up.
        """
        if timeout is None:
            return await self._acquire()
        try:
            return await asyncio.wait_for(self._acquire(), timeout)
        except asyncio.TimeoutError as e:
            raise RateLimitTimeoutError(
                f"No '{self.name}' rate-limit slot within {timeout:.1f}s"
            ) from e

    def release(self, grant: Grant) -> bool:
        """Return an unused grant to the window.

        Only grants whose call never started are returned. Returns True if
        the grant was still counted and has been removed.
        """
        if grant.started:
            return False
        with self._lock:
            try:
                self._grants.remove(grant)
            except ValueError:
                return False
            self._total_granted -= 1
            return True

    @asynccontextmanager
    async def reserve(self, *, timeout: float | None = None) -> AsyncIterator[Grant]:
        """Acquire a grant, returning it if the body exits before it started.

        Call :meth:`Grant.mark_started` right before the network call.
        """
        grant = await self.acquire(timeout=timeout)
        try:
            yield grant
        except BaseException:
            if self.release(grant):
                logger.debug("Released unused '%s' grant", self.name)
            raise

    def in_window(self) -> int:
        """Number of grants currently counted against the window."""
        with self._lock:
            self._evict(self._clock())
            return len(self._grants)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "max_calls": self.max_calls,
            "window_seconds": self.window_seconds,
            "in_window": self.in_window(),
            "total_granted": self._total_granted,
            "total_waits": self._total_waits,
        }
