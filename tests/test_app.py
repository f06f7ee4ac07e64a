from __future__ import annotations

from pathlib import Path

from guild_archiver.app import GuildArchiverApp, load_runtime_options
from guild_archiver.models import CrawlResult, OverallResult, RuntimeOptions
from guild_archiver.store import ArchiveStore


def test_runtime_defaults_without_settings(tmp_path: Path) -> None:
    store = ArchiveStore(tmp_path / "archive.db")

    assert load_runtime_options(store) == RuntimeOptions()
    store.close()


def test_runtime_options_from_settings(tmp_path: Path) -> None:
    store = ArchiveStore(tmp_path / "archive.db")
    store.set_setting("runtime.page_size", "500")
    store.set_setting("runtime.concurrency", "8")
    store.set_setting("runtime.max_attempts", "0")
    store.set_setting("runtime.backoff_base", "250")
    store.set_setting("runtime.backoff_max", "12.5")
    store.set_setting("runtime.timeout", "not-a-number")
    store.set_setting("runtime.refresh_complete", "yes")

    runtime = load_runtime_options(store)

    assert runtime.page_size == 100
    assert runtime.concurrency == 8
    assert runtime.max_attempts == 1
    assert runtime.backoff_base == 0.25
    assert runtime.backoff_max == 12.5
    assert runtime.request_timeout == 15.0
    assert runtime.refresh_complete is True
    store.close()


def test_cli_overrides_win_over_settings(tmp_path: Path) -> None:
    db_path = tmp_path / "archive.db"
    store = ArchiveStore(db_path)
    store.set_setting("runtime.concurrency", "8")
    store.set_setting("runtime.page_size", "40")
    store.close()

    app = GuildArchiverApp(
        db_path=db_path,
        token="token",
        guild_id="1",
        overrides={"concurrency": 2},
    )
    runtime = app._load_runtime()

    assert runtime.concurrency == 2
    assert runtime.page_size == 40
    app.close()


def test_discovery_errors_fail_overall_result() -> None:
    result = OverallResult(
        results={"1": CrawlResult.completed("1")},
        discovery_errors=["архивные треды (private) канала 1: giving up after 5 attempts"],
    )

    assert result.all_completed is False
    assert result.status == "partial_failure"
    assert result.exit_code == 1
    assert OverallResult(results={"1": CrawlResult.completed("1")}).exit_code == 0
