"""SQLite backed archive of channel messages and crawl progress."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence

from .models import ChannelInfo, ChannelProgress, DiscordMessage, NetworkOptions
from .utils import snowflake_key

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"


class ArchiveStore:
    """Persisted messages, per-channel progress and settings."""

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._channels: dict[str, ChannelStore] = {}
        self._setup()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    channel_id TEXT NOT NULL,
                    id INTEGER NOT NULL,
                    author_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT,
                    PRIMARY KEY (channel_id, id)
                );

                CREATE TABLE IF NOT EXISTS channel_progress (
                    channel_id TEXT PRIMARY KEY,
                    oldest_id INTEGER,
                    newest_id INTEGER,
                    complete INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS channels (
                    channel_id TEXT PRIMARY KEY,
                    type INTEGER NOT NULL,
                    guild_id TEXT,
                    name TEXT,
                    parent_id TEXT
                );
                """
            )
            self._conn.commit()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def channel(self, channel_id: str) -> "ChannelStore":
        store = self._channels.get(channel_id)
        if store is None:
            store = ChannelStore(self, channel_id)
            self._channels[channel_id] = store
        return store

    def save_channels(self, channels: Iterable[ChannelInfo]) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.executemany(
                "INSERT INTO channels(channel_id, type, guild_id, name, parent_id)"
                " VALUES(?, ?, ?, ?, ?)"
                " ON CONFLICT(channel_id) DO UPDATE SET type=excluded.type,"
                " guild_id=excluded.guild_id, name=excluded.name, parent_id=excluded.parent_id",
                [
                    (info.id, info.type, info.guild_id, info.name, info.parent_id)
                    for info in channels
                ],
            )
            self._conn.commit()

    def channel_info(self, channel_id: str) -> ChannelInfo | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT channel_id, type, guild_id, name, parent_id FROM channels"
                " WHERE channel_id=?",
                (channel_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return ChannelInfo(
            id=str(row["channel_id"]),
            type=int(row["type"]),
            guild_id=row["guild_id"],
            name=row["name"],
            parent_id=row["parent_id"],
        )

    def list_progress(self) -> list[ChannelProgress]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT channel_id, oldest_id, newest_id, complete, updated_at"
                " FROM channel_progress ORDER BY channel_id"
            )
            rows = cur.fetchall()
        return [_progress_from_row(row) for row in rows]

    def count_messages(self, channel_id: str | None = None) -> int:
        with closing(self._conn.cursor()) as cur:
            if channel_id is None:
                cur.execute("SELECT COUNT(*) FROM messages")
            else:
                cur.execute("SELECT COUNT(*) FROM messages WHERE channel_id=?", (channel_id,))
            row = cur.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Basic settings
    # ------------------------------------------------------------------
    def set_setting(self, key: str, value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._conn.commit()

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def delete_setting(self, key: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("DELETE FROM settings WHERE key=?", (key,))
            self._conn.commit()

    def iter_settings(self, prefix: str | None = None) -> Iterator[tuple[str, str]]:
        query = "SELECT key, value FROM settings"
        params: tuple[str, ...] = ()
        if prefix:
            query += " WHERE key LIKE ?"
            params = (f"{prefix}%",)
        query += " ORDER BY key"
        with closing(self._conn.cursor()) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        for row in rows:
            yield str(row["key"]), str(row["value"])

    def load_network_options(self) -> NetworkOptions:
        def _value(key: str) -> str | None:
            value = self.get_setting(key)
            if value is None:
                return None
            stripped = value.strip()
            return stripped or None

        return NetworkOptions(
            discord_proxy_url=_value("network.proxy_url"),
            discord_proxy_login=_value("network.proxy_login"),
            discord_proxy_password=_value("network.proxy_password"),
            discord_user_agent=_value("network.user_agent"),
        )

    def close(self) -> None:
        self._conn.close()


class ChannelStore:
    """Messages and progress of a single channel.

    Every :meth:`merge` is one SQLite transaction: the page's messages and the
    widened bounds are committed together or not at all.
    """

    def __init__(self, archive: ArchiveStore, channel_id: str):
        self._archive = archive
        self._conn = archive.connection
        self.channel_id = channel_id
        self._progress: ChannelProgress | None = None

    def load(self) -> ChannelProgress:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT channel_id, oldest_id, newest_id, complete, updated_at"
                " FROM channel_progress WHERE channel_id=?",
                (self.channel_id,),
            )
            row = cur.fetchone()
        progress = _progress_from_row(row) if row else ChannelProgress(self.channel_id)
        self._progress = progress
        return progress

    def progress(self) -> ChannelProgress:
        if self._progress is None:
            return self.load()
        return self._progress

    def merge(self, messages: Sequence[DiscordMessage], *, complete: bool = False) -> int:
        """Store a page and widen the channel bounds; return new message count."""

        current = self.progress()
        keys = [snowflake_key(message.id) for message in messages]
        oldest = _widen(current.oldest_id, min(keys) if keys else None, min)
        newest = _widen(current.newest_id, max(keys) if keys else None, max)
        updated = ChannelProgress(
            channel_id=self.channel_id,
            oldest_id=str(oldest) if oldest is not None else None,
            newest_id=str(newest) if newest is not None else None,
            complete=current.complete or complete,
            updated_at=datetime.now(timezone.utc),
        )
        try:
            with closing(self._conn.cursor()) as cur:
                before = self._conn.total_changes
                self._insert_messages(cur, messages, keys)
                inserted = self._conn.total_changes - before
                self._write_progress(cur, updated)
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        self._progress = updated
        return inserted

    def mark_complete(self) -> None:
        self.merge((), complete=True)

    def count(self) -> int:
        return self._archive.count_messages(self.channel_id)

    def iter_messages(self) -> Iterator[DiscordMessage]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT id, author_id, content, timestamp FROM messages"
                " WHERE channel_id=? ORDER BY id",
                (self.channel_id,),
            )
            rows = cur.fetchall()
        for row in rows:
            yield DiscordMessage(
                id=str(row["id"]),
                channel_id=self.channel_id,
                author_id=str(row["author_id"]),
                content=str(row["content"]),
                timestamp=row["timestamp"],
            )

    def message_ids(self) -> list[str]:
        return [message.id for message in self.iter_messages()]

    def _insert_messages(
        self,
        cur: sqlite3.Cursor,
        messages: Iterable[DiscordMessage],
        keys: Sequence[int],
    ) -> None:
        cur.executemany(
            "INSERT OR IGNORE INTO messages(channel_id, id, author_id, content, timestamp)"
            " VALUES(?, ?, ?, ?, ?)",
            [
                (self.channel_id, key, message.author_id, message.content, message.timestamp)
                for key, message in zip(keys, messages)
            ],
        )

    def _write_progress(self, cur: sqlite3.Cursor, progress: ChannelProgress) -> None:
        cur.execute(
            "INSERT INTO channel_progress(channel_id, oldest_id, newest_id, complete, updated_at)"
            " VALUES(?, ?, ?, ?, ?)"
            " ON CONFLICT(channel_id) DO UPDATE SET"
            " oldest_id=excluded.oldest_id, newest_id=excluded.newest_id,"
            " complete=excluded.complete, updated_at=excluded.updated_at",
            (
                self.channel_id,
                int(progress.oldest_id) if progress.oldest_id is not None else None,
                int(progress.newest_id) if progress.newest_id is not None else None,
                1 if progress.complete else 0,
                progress.updated_at.isoformat() if progress.updated_at else None,
            ),
        )


def _widen(
    current: str | None, candidate: int | None, pick: Callable[[int, int], int]
) -> int | None:
    if current is None:
        return candidate
    if candidate is None:
        return int(current)
    return pick(int(current), candidate)


def _progress_from_row(row: sqlite3.Row) -> ChannelProgress:
    updated_raw = row["updated_at"]
    updated_at: datetime | None = None
    if updated_raw:
        try:
            updated_at = datetime.fromisoformat(str(updated_raw))
        except ValueError:
            updated_at = None
    return ChannelProgress(
        channel_id=str(row["channel_id"]),
        oldest_id=str(row["oldest_id"]) if row["oldest_id"] is not None else None,
        newest_id=str(row["newest_id"]) if row["newest_id"] is not None else None,
        complete=bool(row["complete"]),
        updated_at=updated_at,
    )
