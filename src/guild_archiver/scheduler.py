"""Bounded fan-out of channel walks."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from .models import CrawlResult, OverallResult
from .store import ArchiveStore
from .utils import ChannelProcessingGuard
from .walker import ChannelCursorWalker

logger = logging.getLogger(__name__)


class CrawlScheduler:
    """Run :class:`ChannelCursorWalker` over many channels with a worker pool."""

    def __init__(
        self,
        walker: ChannelCursorWalker,
        archive: ArchiveStore,
        *,
        concurrency: int = 4,
        guard: ChannelProcessingGuard | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._walker = walker
        self._archive = archive
        self._concurrency = max(1, int(concurrency))
        self._guard = guard or ChannelProcessingGuard()
        self._stop_event = stop_event or asyncio.Event()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Получен запрос на остановку, новые страницы не запрашиваются")
        self._stop_event.set()

    async def run_all(self, channel_ids: Iterable[str]) -> OverallResult:
        ordered = list(dict.fromkeys(str(channel_id) for channel_id in channel_ids))
        queue: asyncio.Queue[str] = asyncio.Queue()
        for channel_id in ordered:
            queue.put_nowait(channel_id)

        results: dict[str, CrawlResult] = {}
        total = len(ordered)

        async def worker() -> None:
            while True:
                try:
                    channel_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await self._run_channel(channel_id)
                    results[channel_id] = result
                    logger.info(
                        "[%d/%d] Канал %s: %s (+%d сообщений, %d страниц)",
                        len(results),
                        total,
                        channel_id,
                        result.status,
                        result.messages,
                        result.pages,
                    )
                finally:
                    queue.task_done()

        workers = [
            asyncio.create_task(worker(), name=f"crawl-worker-{index}")
            for index in range(min(self._concurrency, total))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        return OverallResult(results={channel_id: results[channel_id] for channel_id in ordered})

    async def _run_channel(self, channel_id: str) -> CrawlResult:
        store = self._archive.channel(channel_id)
        async with self._guard.lock(channel_id):
            try:
                return await self._walker.run(channel_id, store)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Выгрузка канала %s завершилась с ошибкой", channel_id)
                return CrawlResult.failed(channel_id, f"unexpected error: {exc!r}")
