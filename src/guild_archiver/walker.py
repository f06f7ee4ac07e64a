"""Per-channel cursor walk over message history."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .errors import CrawlStopped, FatalError, RetriesExhausted
from .fetcher import AFTER, BEFORE, PageFetcher
from .models import CrawlResult
from .store import ChannelStore
from .utils import snowflake_key

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _WalkStats:
    pages: int = 0
    messages: int = 0


class ChannelCursorWalker:
    """Drive :class:`PageFetcher` across one channel until history runs out.

    Newer messages are picked up first with an ``after`` pass starting at the
    stored newest id; the backward walk then continues from the oldest stored
    id. Progress is committed after every page, so an interrupted run resumes
    from the last committed frontier.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        *,
        refresh_complete: bool = False,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._refresh_complete = refresh_complete
        self._stop_event = stop_event

    async def run(self, channel_id: str, store: ChannelStore) -> CrawlResult:
        progress = store.load()
        if progress.complete and not self._refresh_complete:
            logger.debug("Канал %s уже выгружен полностью", channel_id)
            return CrawlResult.completed(channel_id)

        stats = _WalkStats()
        try:
            if not progress.empty:
                await self._walk_forward(channel_id, store, stats)
            if not store.progress().complete:
                await self._walk_backward(channel_id, store, stats)
        except CrawlStopped:
            logger.info("Канал %s: выгрузка остановлена", channel_id)
            return CrawlResult.partial(
                channel_id,
                store.progress().resume_point,
                reason="stopped",
                pages=stats.pages,
                messages=stats.messages,
            )
        except RetriesExhausted as exc:
            resume_point = store.progress().resume_point
            logger.warning(
                "Канал %s выгружен частично, продолжение с %s: %s",
                channel_id,
                resume_point or "-",
                exc,
            )
            return CrawlResult.partial(
                channel_id,
                resume_point,
                reason=str(exc),
                pages=stats.pages,
                messages=stats.messages,
            )
        except FatalError as exc:
            logger.warning("Канал %s пропущен из-за ошибки: %s", channel_id, exc)
            return CrawlResult.failed(
                channel_id, str(exc), pages=stats.pages, messages=stats.messages
            )

        return CrawlResult.completed(channel_id, pages=stats.pages, messages=stats.messages)

    async def _walk_forward(
        self, channel_id: str, store: ChannelStore, stats: _WalkStats
    ) -> None:
        anchor = store.progress().newest_id
        while anchor is not None:
            self._check_stop()
            page = await self._fetcher.fetch_page(channel_id, anchor, AFTER)
            stats.pages += 1
            if not page:
                return
            if max(snowflake_key(message.id) for message in page) <= snowflake_key(anchor):
                raise FatalError("malformed", f"курсор канала {channel_id} не сдвинулся")
            stats.messages += store.merge(page)
            logger.debug("Канал %s: +%d новых сообщений", channel_id, len(page))
            anchor = store.progress().newest_id
            if len(page) < self._fetcher.page_size:
                return

    async def _walk_backward(
        self, channel_id: str, store: ChannelStore, stats: _WalkStats
    ) -> None:
        anchor = store.progress().oldest_id
        while True:
            self._check_stop()
            page = await self._fetcher.fetch_page(channel_id, anchor, BEFORE)
            stats.pages += 1
            if not page:
                store.mark_complete()
                return
            if anchor is not None and min(
                snowflake_key(message.id) for message in page
            ) >= snowflake_key(anchor):
                raise FatalError("malformed", f"курсор канала {channel_id} не сдвинулся")
            reached_start = len(page) < self._fetcher.page_size
            stats.messages += store.merge(page, complete=reached_start)
            logger.debug(
                "Канал %s: получено %d/%d сообщений",
                channel_id,
                len(page),
                self._fetcher.page_size,
            )
            if reached_start:
                return
            anchor = store.progress().oldest_id

    def _check_stop(self) -> None:
        if self._stop_event is not None and self._stop_event.is_set():
            raise CrawlStopped("stop requested")
