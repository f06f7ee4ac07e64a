"""Guild channel and thread discovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol

from .discord import ApiResponse, last_archive_timestamp, parse_channel, parse_threads
from .errors import FatalError, RetriesExhausted
from .fetcher import RetryingRequester, check_status
from .models import TEXT_CHANNEL_TYPES, ChannelInfo

logger = logging.getLogger(__name__)


class GuildAPI(Protocol):
    async def get_guild_channels(self, guild_id: str) -> ApiResponse: ...

    async def get_active_threads(self, guild_id: str) -> ApiResponse: ...

    async def get_archived_threads(
        self,
        channel_id: str,
        *,
        private: bool = False,
        before: str | None = None,
    ) -> ApiResponse: ...


@dataclass(slots=True)
class DiscoveryResult:
    channels: list[ChannelInfo] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def channel_ids(self) -> list[str]:
        return [channel.id for channel in self.channels]


class ChannelDiscovery:
    """List crawlable channels and threads of a guild.

    Guild channels come first, followed by active threads and the public and
    private archived threads of every text channel. Failing to list the guild
    channels aborts discovery. A thread listing that is denied (401/403/404) is
    skipped; one that keeps failing after retries is skipped and recorded in
    :attr:`DiscoveryResult.errors`.
    """

    def __init__(self, client: GuildAPI, requester: RetryingRequester) -> None:
        self._client = client
        self._requester = requester

    async def discover(self, guild_id: str) -> DiscoveryResult:
        channels = await self._guild_channels(guild_id)
        found: dict[str, ChannelInfo] = {}
        for channel in channels:
            if channel.crawlable:
                found.setdefault(channel.id, channel)
            else:
                logger.debug("Канал %s пропущен (тип %s)", channel.id, channel.type)

        result = DiscoveryResult()
        await self._collect(
            f"активные треды гильдии {guild_id}",
            self._active_threads(guild_id),
            found,
            result,
        )
        for channel in channels:
            if channel.type not in TEXT_CHANNEL_TYPES:
                continue
            for private in (False, True):
                scope = "private" if private else "public"
                await self._collect(
                    f"архивные треды ({scope}) канала {channel.id}",
                    self._archived_threads(channel.id, private=private),
                    found,
                    result,
                )

        result.channels = list(found.values())
        logger.info("Найдено каналов для выгрузки: %d", len(result.channels))
        return result

    async def _collect(
        self,
        label: str,
        batches: AsyncIterator[list[ChannelInfo]],
        found: dict[str, ChannelInfo],
        result: DiscoveryResult,
    ) -> None:
        try:
            async for batch in batches:
                for thread in batch:
                    if thread.crawlable:
                        found.setdefault(thread.id, thread)
        except FatalError as exc:
            logger.info("Не удалось получить %s, пропускаем: %s", label, exc)
        except RetriesExhausted as exc:
            logger.warning("Не удалось получить %s: %s", label, exc)
            result.errors.append(f"{label}: {exc}")

    async def _guild_channels(self, guild_id: str) -> list[ChannelInfo]:
        payload = await self._request(
            f"GET /guilds/{guild_id}/channels",
            lambda: self._client.get_guild_channels(guild_id),
            f"каналов гильдии {guild_id}",
        )
        if not isinstance(payload, list):
            raise FatalError("malformed", f"ожидался список каналов гильдии {guild_id}")
        return [
            parse_channel(entry)
            for entry in payload
            if isinstance(entry, Mapping) and entry.get("id")
        ]

    async def _active_threads(self, guild_id: str) -> AsyncIterator[list[ChannelInfo]]:
        payload = await self._request(
            f"GET /guilds/{guild_id}/threads/active",
            lambda: self._client.get_active_threads(guild_id),
            f"активных тредов гильдии {guild_id}",
        )
        if not isinstance(payload, Mapping):
            raise FatalError("malformed", f"неожиданный ответ для тредов гильдии {guild_id}")
        yield parse_threads(payload)

    async def _archived_threads(
        self, channel_id: str, *, private: bool
    ) -> AsyncIterator[list[ChannelInfo]]:
        scope = "private" if private else "public"
        before: str | None = None
        while True:
            cursor = before
            payload = await self._request(
                f"GET /channels/{channel_id}/threads/archived/{scope}",
                lambda: self._client.get_archived_threads(
                    channel_id, private=private, before=cursor
                ),
                f"архивных тредов ({scope}) канала {channel_id}",
            )
            if not isinstance(payload, Mapping):
                raise FatalError("malformed", f"неожиданный ответ для тредов канала {channel_id}")
            batch = parse_threads(payload)
            yield batch
            before = last_archive_timestamp(payload)
            if not batch or not payload.get("has_more") or not before:
                return

    async def _request(
        self, route: str, call: Callable[[], Awaitable[ApiResponse]], subject: str
    ) -> Any:
        response = await self._requester.request(route, call, label=f"Запрос {subject}")
        check_status(response, subject)
        return response.payload
