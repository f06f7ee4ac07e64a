from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from guild_archiver.models import ChannelInfo, ChannelProgress, DiscordMessage
from guild_archiver.store import ArchiveStore, ChannelStore


def _message(message_id: int, content: str | None = None, channel_id: str = "chan") -> DiscordMessage:
    return DiscordMessage(
        id=str(message_id),
        channel_id=channel_id,
        author_id="42",
        content=content if content is not None else f"message {message_id}",
        timestamp="2024-01-01T00:00:00+00:00",
    )


class FailingChannelStore(ChannelStore):
    def _write_progress(self, cur: sqlite3.Cursor, progress: ChannelProgress) -> None:
        raise RuntimeError("disk full")


def test_merge_deduplicates_and_keeps_first_content(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    store = archive.channel("chan")

    assert store.merge([_message(3), _message(2), _message(1)]) == 3
    assert store.merge([_message(4), _message(3, content="edited later")]) == 1

    assert store.count() == 4
    stored = {message.id: message.content for message in store.iter_messages()}
    assert stored["3"] == "message 3"
    assert store.message_ids() == ["1", "2", "3", "4"]
    archive.close()


def test_bounds_only_widen(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    store = archive.channel("chan")

    store.merge([_message(6), _message(5)])
    store.merge([_message(2), _message(1)])
    store.merge([_message(3)])

    progress = store.progress()
    assert progress.oldest_id == "1"
    assert progress.newest_id == "6"
    assert progress.complete is False
    archive.close()


def test_ids_order_numerically_not_lexically(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    store = archive.channel("chan")

    store.merge([_message(100), _message(99), _message(1000)])

    assert store.progress().oldest_id == "99"
    assert store.progress().newest_id == "1000"
    assert store.message_ids() == ["99", "100", "1000"]
    archive.close()


def test_progress_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "archive.db"
    archive = ArchiveStore(path)
    store = archive.channel("chan")
    store.merge([_message(20), _message(10)])
    store.mark_complete()
    archive.close()

    reopened = ArchiveStore(path)
    progress = reopened.channel("chan").load()

    assert progress.oldest_id == "10"
    assert progress.newest_id == "20"
    assert progress.complete is True
    assert progress.updated_at is not None
    assert [item.channel_id for item in reopened.list_progress()] == ["chan"]
    reopened.close()


def test_unknown_channel_loads_empty_progress(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")

    progress = archive.channel("missing").load()

    assert progress.empty
    assert progress.complete is False
    assert progress.resume_point is None
    archive.close()


def test_failed_merge_leaves_no_partial_page(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    archive.channel("chan").merge([_message(50)])
    failing = FailingChannelStore(archive, "chan")

    with pytest.raises(RuntimeError):
        failing.merge([_message(40), _message(30)])

    fresh = ChannelStore(archive, "chan")
    assert fresh.count() == 1
    assert fresh.load().oldest_id == "50"
    assert failing.progress().oldest_id == "50"
    archive.close()


def test_malformed_id_is_rejected_before_writing(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    store = archive.channel("chan")

    with pytest.raises(ValueError):
        store.merge([_message(1), DiscordMessage("oops", "chan", "1", "text")])

    assert store.count() == 0
    assert store.load().empty
    archive.close()


def test_channels_are_isolated(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    archive.channel("a").merge([_message(1, channel_id="a")])
    archive.channel("b").merge([_message(1, channel_id="b"), _message(2, channel_id="b")])

    assert archive.channel("a").count() == 1
    assert archive.channel("b").count() == 2
    assert archive.count_messages() == 3
    assert archive.channel("a") is archive.channel("a")
    archive.close()


def test_settings_and_network_options(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    archive.set_setting("runtime.page_size", "50")
    archive.set_setting("runtime.page_size", "25")
    archive.set_setting("network.proxy_url", "http://proxy:3128")
    archive.set_setting("network.user_agent", "  ")

    assert archive.get_setting("runtime.page_size") == "25"
    assert archive.get_setting("missing", "fallback") == "fallback"
    assert list(archive.iter_settings("runtime.")) == [("runtime.page_size", "25")]

    network = archive.load_network_options()
    assert network.discord_proxy_url == "http://proxy:3128"
    assert network.discord_user_agent is None

    archive.delete_setting("runtime.page_size")
    assert archive.get_setting("runtime.page_size") is None
    archive.close()


def test_channel_metadata_is_upserted(tmp_path: Path) -> None:
    archive = ArchiveStore(tmp_path / "archive.db")
    archive.save_channels(
        [
            ChannelInfo(id="1", type=0, guild_id="900", name="general"),
            ChannelInfo(id="10", type=11, parent_id="1"),
        ]
    )
    archive.save_channels([ChannelInfo(id="1", type=0, guild_id="900", name="renamed")])

    assert archive.channel_info("1") == ChannelInfo(id="1", type=0, guild_id="900", name="renamed")
    assert archive.channel_info("10") == ChannelInfo(id="10", type=11, parent_id="1")
    assert archive.channel_info("404") is None
    archive.close()
