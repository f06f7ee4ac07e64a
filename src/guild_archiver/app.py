"""Application bootstrap for Guild Archiver."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import aiohttp

from .discord import DiscordClient
from .discovery import ChannelDiscovery
from .errors import CrawlStopped
from .fetcher import PageFetcher, RetryingRequester, RetryPolicy
from .models import OverallResult, RuntimeOptions
from .ratelimit import RateLimiter
from .scheduler import CrawlScheduler
from .store import ArchiveStore
from .utils import parse_bool, parse_delay_setting, parse_float, parse_int
from .walker import ChannelCursorWalker

logger = logging.getLogger(__name__)


class GuildArchiverApp:
    """High level coordinator tying together Discord, the archive and the crawl."""

    def __init__(
        self,
        *,
        db_path: Path,
        token: str,
        guild_id: str | None = None,
        user_token: bool = False,
        overrides: Mapping[str, Any] | None = None,
    ):
        self._store = ArchiveStore(db_path)
        self._token = token
        self._guild_id = guild_id
        self._user_token = user_token
        self._overrides = overrides
        self._stop_event = asyncio.Event()

    @property
    def store(self) -> ArchiveStore:
        return self._store

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Получен запрос на остановку, новые запросы не отправляются")
        self._stop_event.set()

    async def run(self, channel_ids: Sequence[str] | None = None) -> OverallResult:
        runtime = self._load_runtime()
        guild_id = self._guild_id
        if not channel_ids and not guild_id:
            raise ValueError("Нужно указать гильдию или список каналов")

        limiter = RateLimiter()
        retry = RetryPolicy(
            max_attempts=runtime.max_attempts,
            base_delay=runtime.backoff_base,
            max_delay=runtime.backoff_max,
        )
        async with aiohttp.ClientSession() as session:
            client = DiscordClient(session, timeout=runtime.request_timeout)
            client.set_token(self._token, user_token=self._user_token)
            client.set_network_options(self._store.load_network_options())

            with self._stop_signals():
                discovery_errors: list[str] = []
                if channel_ids:
                    targets = list(channel_ids)
                else:
                    requester = RetryingRequester(
                        limiter, retry=retry, stop_event=self._stop_event
                    )
                    try:
                        found = await ChannelDiscovery(client, requester).discover(str(guild_id))
                    except CrawlStopped:
                        logger.info("Поиск каналов прерван")
                        return OverallResult(discovery_errors=["discovery stopped"])
                    self._store.save_channels(found.channels)
                    targets = found.channel_ids
                    discovery_errors = found.errors

                fetcher = PageFetcher(
                    client,
                    limiter,
                    page_size=runtime.page_size,
                    retry=retry,
                    stop_event=self._stop_event,
                )
                walker = ChannelCursorWalker(
                    fetcher,
                    refresh_complete=runtime.refresh_complete,
                    stop_event=self._stop_event,
                )
                scheduler = CrawlScheduler(
                    walker,
                    self._store,
                    concurrency=runtime.concurrency,
                    stop_event=self._stop_event,
                )
                result = await scheduler.run_all(targets)
                result.discovery_errors.extend(discovery_errors)

        self._log_summary(result)
        return result

    def close(self) -> None:
        self._store.close()

    @contextlib.contextmanager
    def _stop_signals(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    def _log_summary(self, result: OverallResult) -> None:
        for error in result.discovery_errors:
            logger.warning("Треды не получены: %s", error)
        for channel_id, outcome in result.results.items():
            if outcome.is_completed:
                continue
            logger.warning(
                "Канал %s: %s%s",
                channel_id,
                outcome.status,
                f" ({outcome.reason})" if outcome.reason else "",
            )
        logger.info(
            "Выгрузка завершена: %d из %d каналов полностью",
            sum(1 for outcome in result.results.values() if outcome.is_completed),
            len(result.results),
        )

    def _load_runtime(self) -> RuntimeOptions:
        runtime = load_runtime_options(self._store)
        if self._overrides:
            runtime = replace(runtime, **dict(self._overrides))
        return runtime


def load_runtime_options(store: ArchiveStore) -> RuntimeOptions:
    """Read ``runtime.*`` settings, falling back to defaults for bad values."""

    defaults = RuntimeOptions()
    get = store.get_setting
    return RuntimeOptions(
        page_size=parse_int(get("runtime.page_size"), defaults.page_size, maximum=100),
        concurrency=parse_int(get("runtime.concurrency"), defaults.concurrency),
        max_attempts=parse_int(get("runtime.max_attempts"), defaults.max_attempts),
        backoff_base=parse_delay_setting(get("runtime.backoff_base"), defaults.backoff_base),
        backoff_max=parse_delay_setting(get("runtime.backoff_max"), defaults.backoff_max),
        request_timeout=parse_float(get("runtime.timeout"), defaults.request_timeout, minimum=1.0),
        refresh_complete=parse_bool(get("runtime.refresh_complete"), defaults.refresh_complete),
    )
