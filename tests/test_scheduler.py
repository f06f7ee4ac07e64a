from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, cast

from guild_archiver.discord import ApiResponse
from guild_archiver.fetcher import PageFetcher, RetryPolicy
from guild_archiver.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    CrawlResult,
)
from guild_archiver.ratelimit import RateLimiter
from guild_archiver.scheduler import CrawlScheduler
from guild_archiver.store import ArchiveStore, ChannelStore
from guild_archiver.walker import ChannelCursorWalker


class DummyWalker:
    def __init__(self, *, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.active = 0
        self.max_active = 0
        self.seen: list[str] = []

    async def run(self, channel_id: str, store: ChannelStore) -> CrawlResult:
        self.seen.append(channel_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if channel_id in self.failing:
                raise RuntimeError(f"boom in {channel_id}")
            return CrawlResult.completed(channel_id, pages=1, messages=1)
        finally:
            self.active -= 1


class PagedAPI:
    def __init__(self, history: dict[str, list[int]]) -> None:
        self.history = history
        self.forbidden: set[str] = set()
        self.calls: list[str] = []

    async def get_messages(
        self,
        channel_id: str,
        *,
        limit: int = 100,
        before: str | None = None,
        after: str | None = None,
    ) -> ApiResponse:
        self.calls.append(channel_id)
        if channel_id in self.forbidden:
            return ApiResponse(403, {}, {"message": "Missing Access"})
        ids = sorted(self.history.get(channel_id, []))
        if after is not None:
            selected = [value for value in ids if value > int(after)][:limit]
        elif before is not None:
            selected = [value for value in ids if value < int(before)][-limit:]
        else:
            selected = ids[-limit:]
        payload: list[dict[str, Any]] = [
            {"id": str(value), "author": {"id": "1"}, "content": f"{channel_id}:{value}"}
            for value in reversed(selected)
        ]
        return ApiResponse(200, {}, payload)


def _real_walker(api: PagedAPI, stop: asyncio.Event | None = None) -> ChannelCursorWalker:
    async def no_sleep(delay: float) -> None:
        return None

    fetcher = PageFetcher(
        api,
        RateLimiter(),
        page_size=10,
        retry=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
        sleep=no_sleep,
    )
    return ChannelCursorWalker(fetcher, stop_event=stop)


def test_concurrency_is_capped(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    walker = DummyWalker()
    scheduler = CrawlScheduler(
        cast(ChannelCursorWalker, walker), archive, concurrency=2
    )

    result = asyncio.run(scheduler.run_all(["a", "b", "c", "d", "e"]))

    assert walker.max_active == 2
    assert list(result.results) == ["a", "b", "c", "d", "e"]
    assert result.all_completed is True
    assert result.status == "all_completed"
    assert result.exit_code == 0
    archive.close()


def test_duplicate_channels_run_once(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    walker = DummyWalker()
    scheduler = CrawlScheduler(cast(ChannelCursorWalker, walker), archive, concurrency=3)

    result = asyncio.run(scheduler.run_all(["a", "b", "a"]))

    assert sorted(walker.seen) == ["a", "b"]
    assert list(result.results) == ["a", "b"]
    archive.close()


def test_unexpected_error_is_isolated(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    walker = DummyWalker(failing={"b"})
    scheduler = CrawlScheduler(cast(ChannelCursorWalker, walker), archive, concurrency=2)

    result = asyncio.run(scheduler.run_all(["a", "b", "c"]))

    assert result.results["a"].status == STATUS_COMPLETED
    assert result.results["c"].status == STATUS_COMPLETED
    assert result.results["b"].status == STATUS_FAILED
    assert "boom in b" in (result.results["b"].reason or "")
    assert result.status == "partial_failure"
    assert result.exit_code == 1
    assert result.failed_channels() == ["b"]
    archive.close()


def test_empty_channel_list(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    scheduler = CrawlScheduler(cast(ChannelCursorWalker, DummyWalker()), archive)

    result = asyncio.run(scheduler.run_all([]))

    assert result.results == {}
    assert result.exit_code == 0
    archive.close()


def test_rerun_only_redoes_incomplete_channels(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    api = PagedAPI({"a": list(range(1, 26)), "b": list(range(1, 16))})
    api.forbidden.add("b")

    first = asyncio.run(CrawlScheduler(_real_walker(api), archive, concurrency=2).run_all(["a", "b"]))

    assert first.results["a"].status == STATUS_COMPLETED
    assert first.results["b"].status == STATUS_FAILED
    assert archive.channel("a").count() == 25
    assert archive.channel("b").count() == 0

    api.forbidden.clear()
    api.calls.clear()
    second = asyncio.run(CrawlScheduler(_real_walker(api), archive, concurrency=2).run_all(["a", "b"]))

    assert second.all_completed is True
    assert "a" not in api.calls
    assert api.calls == ["b", "b"]
    assert archive.channel("b").count() == 15
    archive.close()


def test_stop_request_reports_partial_without_requests(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    api = PagedAPI({"a": list(range(1, 26)), "b": list(range(1, 16))})
    stop = asyncio.Event()
    scheduler = CrawlScheduler(_real_walker(api, stop), archive, stop_event=stop)

    scheduler.request_stop()
    result = asyncio.run(scheduler.run_all(["a", "b"]))

    assert api.calls == []
    assert [outcome.status for outcome in result.results.values()] == [STATUS_PARTIAL, STATUS_PARTIAL]
    assert result.partial_channels() == ["a", "b"]
    assert scheduler.stop_event is stop
    archive.close()
