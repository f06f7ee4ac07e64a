"""Bucket-based rate limiting driven by Discord response headers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

GLOBAL_ROUTE = "global"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RouteBucket:
    """Budget reported by Discord for one route."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: float = 0.0
    blocked_until: float = 0.0

    def required_wait(self, now: float) -> float:
        wait = 0.0
        if now < self.blocked_until:
            wait = self.blocked_until - now
        if self.remaining is not None and self.remaining <= 0:
            if now < self.reset_at:
                wait = max(wait, self.reset_at - now)
            else:
                self.remaining = self.limit
        return wait


class RateLimiter:
    """Track per-route and global request budgets.

    ``acquire`` never sleeps: it either grants a permit (``0.0``) or tells the
    caller how long to wait. Every read-modify-write of the buckets happens
    under one lock, so concurrent workers see consistent counters.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._buckets: dict[str, RouteBucket] = {}

    def _bucket(self, route: str) -> RouteBucket:
        bucket = self._buckets.get(route)
        if bucket is None:
            bucket = RouteBucket()
            self._buckets[route] = bucket
        return bucket

    async def acquire(self, route: str) -> float:
        async with self._lock:
            now = self._clock()
            wait = self._bucket(GLOBAL_ROUTE).required_wait(now)
            bucket = self._bucket(route)
            wait = max(wait, bucket.required_wait(now))
            if wait > 0:
                return wait
            if bucket.remaining is not None:
                bucket.remaining -= 1
            return 0.0

    async def wait(
        self,
        route: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        while True:
            delay = await self.acquire(route)
            if delay <= 0:
                return
            logger.debug("Маршрут %s ограничен, ожидание %.2f с", route, delay)
            await sleep(delay)

    async def update(self, route: str, headers: Mapping[str, str]) -> None:
        normalized = {str(key).lower(): value for key, value in headers.items()}
        limit = _header_int(normalized, "x-ratelimit-limit")
        remaining = _header_int(normalized, "x-ratelimit-remaining")
        reset_after = _header_float(normalized, "x-ratelimit-reset-after")
        if limit is None and remaining is None and reset_after is None:
            return
        async with self._lock:
            bucket = self._bucket(route)
            if limit is not None:
                bucket.limit = limit
            if remaining is not None:
                bucket.remaining = remaining
            if reset_after is not None:
                bucket.reset_at = self._clock() + reset_after

    async def retry_after(self, route: str, delay: float, *, is_global: bool = False) -> None:
        """Apply an authoritative ``retry_after`` from a rejected request."""

        target = GLOBAL_ROUTE if is_global else route
        async with self._lock:
            bucket = self._bucket(target)
            until = self._clock() + max(0.0, delay)
            if until > bucket.blocked_until:
                bucket.blocked_until = until
        logger.warning(
            "Discord ограничил запросы (%s), пауза %.2f с",
            "глобально" if is_global else route,
            delay,
        )

    def snapshot(self, route: str) -> RouteBucket:
        bucket = self._buckets.get(route) or RouteBucket()
        return RouteBucket(
            limit=bucket.limit,
            remaining=bucket.remaining,
            reset_at=bucket.reset_at,
            blocked_until=bucket.blocked_until,
        )


def _header_int(headers: Mapping[str, str], key: str) -> int | None:
    value = headers.get(key)
    if value is None:
        return None
    try:
        return int(float(str(value)))
    except (TypeError, ValueError):
        return None


def _header_float(headers: Mapping[str, str], key: str) -> float | None:
    value = headers.get(key)
    if value is None:
        return None
    try:
        return max(0.0, float(str(value)))
    except (TypeError, ValueError):
        return None
