"""Discord API client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import aiohttp

from .errors import RecoverableError
from .models import ChannelInfo, DiscordMessage, NetworkOptions
from .utils import snowflake_key

_API_BASE = "https://discord.com/api/v10"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_DEFAULT_TIMEOUT = 15.0


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApiResponse:
    """Status, headers and decoded body of one Discord request."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: Any = None


def format_authorization(token: str, *, user_token: bool = False) -> str:
    """Return the ``Authorization`` header value for ``token``."""

    candidate = (token or "").strip()
    lowered = candidate.lower()
    if user_token or lowered.startswith("bot ") or lowered.startswith("bearer "):
        return candidate
    return f"Bot {candidate}"


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(self, session: aiohttp.ClientSession, *, timeout: float = _DEFAULT_TIMEOUT):
        self._session = session
        self._token: str | None = None
        self._network = NetworkOptions()
        self._timeout = timeout

    def set_token(self, token: str | None, *, user_token: bool = False) -> None:
        self._token = format_authorization(token, user_token=user_token) if token else None

    def set_network_options(self, options: NetworkOptions) -> None:
        self._network = options

    async def get_messages(
        self,
        channel_id: str,
        *,
        limit: int = 100,
        before: str | None = None,
        after: str | None = None,
    ) -> ApiResponse:
        params = {"limit": str(max(1, min(limit, 100)))}
        if after:
            params["after"] = after
        if before:
            params["before"] = before
        return await self._get(f"/channels/{channel_id}/messages", params=params)

    async def get_guild_channels(self, guild_id: str) -> ApiResponse:
        return await self._get(f"/guilds/{guild_id}/channels")

    async def get_active_threads(self, guild_id: str) -> ApiResponse:
        return await self._get(f"/guilds/{guild_id}/threads/active")

    async def get_archived_threads(
        self,
        channel_id: str,
        *,
        private: bool = False,
        before: str | None = None,
    ) -> ApiResponse:
        scope = "private" if private else "public"
        params = {"limit": "100"}
        if before:
            params["before"] = before
        return await self._get(f"/channels/{channel_id}/threads/archived/{scope}", params=params)

    async def _get(
        self, path: str, *, params: Mapping[str, str] | None = None
    ) -> ApiResponse:
        headers = {
            "User-Agent": self._choose_user_agent(),
            "Accept": "application/json",
        }
        if self._token:
            headers["Authorization"] = self._token

        url = f"{_API_BASE}{path}"
        proxy = self._network.discord_proxy_url
        proxy_auth = self._build_proxy_auth()

        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.get(
                url,
                headers=headers,
                params=dict(params or {}),
                proxy=proxy,
                timeout=timeout_cfg,
                proxy_auth=proxy_auth,
            ) as resp:
                response_headers = {key.lower(): value for key, value in resp.headers.items()}
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
                return ApiResponse(status=resp.status, headers=response_headers, payload=payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Не удалось выполнить запрос к Discord %s: %s", path, exc)
            raise RecoverableError(f"transport error: {exc!r}") from exc

    def _choose_user_agent(self) -> str:
        return self._network.discord_user_agent or _DEFAULT_USER_AGENT

    def _build_proxy_auth(
        self, options: NetworkOptions | None = None
    ) -> aiohttp.BasicAuth | None:
        opts = options or self._network
        login = opts.discord_proxy_login
        password = opts.discord_proxy_password
        if login:
            return aiohttp.BasicAuth(login, password or "")
        return None


def parse_message(payload: Any, channel_id: str) -> DiscordMessage:
    """Convert a raw message object into :class:`DiscordMessage`.

    Raises ``ValueError`` when the payload does not look like a message.
    """

    if not isinstance(payload, Mapping):
        raise ValueError(f"message payload is not an object: {type(payload).__name__}")
    message_id = str(payload.get("id") or "")
    snowflake_key(message_id)
    author = payload.get("author") or {}
    if not isinstance(author, Mapping):
        raise ValueError(f"message {message_id} has a malformed author")
    timestamp = payload.get("timestamp")
    return DiscordMessage(
        id=message_id,
        channel_id=str(payload.get("channel_id") or channel_id),
        author_id=str(author.get("id") or "0"),
        content=str(payload.get("content") or ""),
        timestamp=str(timestamp) if timestamp else None,
    )


def parse_channel(entry: Mapping[str, Any]) -> ChannelInfo:
    channel_type_raw = entry.get("type")
    try:
        channel_type = int(str(channel_type_raw))
    except (TypeError, ValueError):
        channel_type = -1
    return ChannelInfo(
        id=str(entry.get("id")),
        type=channel_type,
        guild_id=str(entry.get("guild_id")) if entry.get("guild_id") else None,
        name=str(entry.get("name") or "") or None,
        parent_id=str(entry.get("parent_id")) if entry.get("parent_id") else None,
    )


def parse_threads(data: Mapping[str, Any]) -> list[ChannelInfo]:
    threads_raw = data.get("threads") or []
    return [
        parse_channel(entry)
        for entry in threads_raw
        if isinstance(entry, Mapping) and entry.get("id")
    ]


def last_archive_timestamp(data: Mapping[str, Any]) -> str | None:
    threads_raw: Sequence[Any] = data.get("threads") or []
    for entry in reversed(threads_raw):
        if not isinstance(entry, Mapping):
            continue
        metadata = entry.get("thread_metadata") or {}
        if isinstance(metadata, Mapping) and metadata.get("archive_timestamp"):
            return str(metadata["archive_timestamp"])
    return None
