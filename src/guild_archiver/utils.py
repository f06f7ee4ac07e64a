"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ChannelProcessingGuard:
    """Coordinate access to channel-specific operations across coroutines."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, channel_id: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[channel_id] = lock
        async with lock:
            yield


def snowflake_key(message_id: str) -> int:
    """Return the sortable integer value of a Discord snowflake.

    Raises ``ValueError`` for identifiers that are not decimal integers.
    """

    stripped = str(message_id).strip()
    if not stripped.isdigit():
        raise ValueError(f"Invalid snowflake: {message_id!r}")
    return int(stripped)


def parse_delay_setting(value: str | None, default: float = 0.0) -> float:
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    try:
        if any(symbol in stripped for symbol in ".eE"):
            parsed = float(stripped)
        else:
            parsed = float(int(stripped) / 1000)
    except ValueError:
        return default
    return max(0.0, parsed)


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Any other value returns ``default``.
    """

    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def parse_int(value: str | None, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def parse_float(value: str | None, default: float, *, minimum: float = 0.0) -> float:
    if value is None:
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return max(minimum, parsed)
