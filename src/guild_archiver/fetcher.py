"""Single-page retrieval with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .discord import ApiResponse, parse_message
from .errors import (
    CrawlError,
    CrawlStopped,
    FatalError,
    RecoverableError,
    RetriesExhausted,
)
from .models import DiscordMessage
from .ratelimit import RateLimiter
from .utils import snowflake_key

BEFORE = "before"
AFTER = "after"

_FATAL_STATUSES = {401: "unauthorized", 403: "forbidden", 404: "not_found"}

logger = logging.getLogger(__name__)


class MessagesAPI(Protocol):
    async def get_messages(
        self,
        channel_id: str,
        *,
        limit: int = 100,
        before: str | None = None,
        after: str | None = None,
    ) -> ApiResponse: ...


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff settings for recoverable failures."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))


class RetrySchedule:
    """Retry state machine for one logical page request.

    ``attempting(n) -> waiting(d) -> attempting(n + 1) -> ... -> exhausted``.
    Waits never shrink between consecutive transitions.
    """

    ATTEMPTING = "attempting"
    WAITING = "waiting"
    EXHAUSTED = "exhausted"

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self.state = self.ATTEMPTING
        self.attempt = 1
        self.delay = 0.0
        self.last_error: CrawlError | None = None

    def failed(self, error: RecoverableError) -> float | None:
        """Record a failed attempt; return the wait before the next one or ``None``."""

        self.last_error = error
        if self.attempt >= max(1, self.policy.max_attempts):
            self.state = self.EXHAUSTED
            return None
        delay = max(self.delay, self.policy.backoff(self.attempt), error.retry_after or 0.0)
        self.delay = delay
        self.state = self.WAITING
        return delay

    def resume(self) -> None:
        self.attempt += 1
        self.state = self.ATTEMPTING


class RetryingRequester:
    """Send Discord requests through the rate limiter, retrying transient failures.

    429 and 5xx responses, as well as transport errors, are retried according
    to :class:`RetryPolicy`. Any other response is returned to the caller for
    classification. When ``stop_event`` is set no further request is issued
    and pending waits end early with :class:`CrawlStopped`.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._limiter = limiter
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._stop_event = stop_event

    async def request(
        self,
        route: str,
        call: Callable[[], Awaitable[ApiResponse]],
        *,
        label: str,
    ) -> ApiResponse:
        """Return the first response that is neither a 429 nor a 5xx.

        Raises :class:`RetriesExhausted` or :class:`CrawlStopped`.
        """

        schedule = RetrySchedule(self._retry)
        while True:
            self._check_stop()
            try:
                return await self._attempt(route, call)
            except RecoverableError as exc:
                delay = schedule.failed(exc)
                if delay is None:
                    logger.warning(
                        "%s: не получено после %d попыток: %s", label, schedule.attempt, exc
                    )
                    raise RetriesExhausted(schedule.attempt, exc) from exc
                self._check_stop()
                logger.info(
                    "%s: попытка %d не удалась (%s), повтор через %.2f с",
                    label,
                    schedule.attempt,
                    exc,
                    delay,
                )
                await self._pause(delay)
                schedule.resume()

    async def _attempt(
        self, route: str, call: Callable[[], Awaitable[ApiResponse]]
    ) -> ApiResponse:
        await self._limiter.wait(route, self._pause)
        self._check_stop()
        response = await call()
        await self._limiter.update(route, response.headers)

        status = response.status
        if status == 429:
            retry_after, is_global = _retry_after(response)
            await self._limiter.retry_after(route, retry_after, is_global=is_global)
            raise RecoverableError(
                "rate limited", status=status, retry_after=retry_after, is_global=is_global
            )
        if status >= 500:
            raise RecoverableError(f"server error {status}", status=status)
        return response

    async def _pause(self, delay: float) -> None:
        stop = self._stop_event
        if stop is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                task.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)
        self._check_stop()

    def _check_stop(self) -> None:
        if self._stop_event is not None and self._stop_event.is_set():
            raise CrawlStopped("stop requested")


def check_status(response: ApiResponse, subject: str) -> None:
    """Raise :class:`FatalError` for responses that retrying cannot fix."""

    status = response.status
    if status in _FATAL_STATUSES:
        raise FatalError(
            _FATAL_STATUSES[status],
            f"Discord ответил статусом {status} для {subject}",
            status=status,
        )
    if status >= 300:
        raise FatalError("http", f"неожиданный статус {status} для {subject}", status=status)


class PageFetcher:
    """Fetch one page of channel history, retrying transient failures."""

    def __init__(
        self,
        client: MessagesAPI,
        limiter: RateLimiter,
        *,
        page_size: int = 100,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._page_size = max(1, min(page_size, 100))
        self._requester = RetryingRequester(
            limiter, retry=retry, sleep=sleep, stop_event=stop_event
        )

    @property
    def page_size(self) -> int:
        return self._page_size

    async def fetch_page(
        self,
        channel_id: str,
        anchor: str | None,
        direction: str = BEFORE,
    ) -> list[DiscordMessage]:
        """Return one page ordered away from ``anchor``.

        ``before`` pages come newest-first, ``after`` pages oldest-first.
        Raises :class:`FatalError`, :class:`RetriesExhausted` or
        :class:`CrawlStopped`.
        """

        if direction not in (BEFORE, AFTER):
            raise ValueError(f"Unknown direction: {direction}")
        kwargs: dict[str, Any] = {"limit": self._page_size}
        if anchor is not None:
            kwargs[direction] = anchor

        async def call() -> ApiResponse:
            return await self._client.get_messages(channel_id, **kwargs)

        response = await self._requester.request(
            f"GET /channels/{channel_id}/messages",
            call,
            label=f"Канал {channel_id}, страница {direction} {anchor or '-'}",
        )
        check_status(response, f"канала {channel_id}")
        return _parse_page(response.payload, channel_id, direction)


def _parse_page(payload: Any, channel_id: str, direction: str) -> list[DiscordMessage]:
    if not isinstance(payload, list):
        raise FatalError("malformed", f"ожидался список сообщений, получено {type(payload).__name__}")
    try:
        messages = [parse_message(entry, channel_id) for entry in payload]
    except ValueError as exc:
        raise FatalError("malformed", str(exc)) from exc
    unique: dict[str, DiscordMessage] = {}
    for message in messages:
        unique.setdefault(message.id, message)
    return sorted(
        unique.values(),
        key=lambda message: snowflake_key(message.id),
        reverse=direction == BEFORE,
    )


def _retry_after(response: ApiResponse) -> tuple[float, bool]:
    headers: Mapping[str, str] = {
        str(key).lower(): value for key, value in response.headers.items()
    }
    body = response.payload if isinstance(response.payload, Mapping) else {}
    value: Any = body.get("retry_after")
    if value is None:
        value = headers.get("retry-after")
    try:
        delay = max(0.0, float(value)) if value is not None else 1.0
    except (TypeError, ValueError):
        delay = 1.0
    is_global = bool(body.get("global")) or (
        str(headers.get("x-ratelimit-global", "")).lower() == "true"
    ) or headers.get("x-ratelimit-scope") == "global"
    return delay, is_global
