"""Data models used across the archiver."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

# GUILD_TEXT, GUILD_ANNOUNCEMENT and the three thread types.
TEXT_CHANNEL_TYPES: frozenset[int] = frozenset({0, 5})
THREAD_CHANNEL_TYPES: frozenset[int] = frozenset({10, 11, 12})


@dataclass(slots=True, frozen=True)
class DiscordMessage:
    """Subset of the Discord payload kept in the archive."""

    id: str
    channel_id: str
    author_id: str
    content: str
    timestamp: str | None = None


@dataclass(slots=True)
class ChannelInfo:
    """Basic channel metadata from Discord API."""

    id: str
    type: int
    guild_id: str | None = None
    name: str | None = None
    parent_id: str | None = None

    @property
    def crawlable(self) -> bool:
        return self.type in TEXT_CHANNEL_TYPES or self.type in THREAD_CHANNEL_TYPES


@dataclass(slots=True)
class ChannelProgress:
    """Persisted crawl frontier of a single channel."""

    channel_id: str
    oldest_id: str | None = None
    newest_id: str | None = None
    complete: bool = False
    updated_at: datetime | None = None

    @property
    def resume_point(self) -> str | None:
        return self.oldest_id

    @property
    def empty(self) -> bool:
        return self.oldest_id is None and self.newest_id is None


@dataclass(slots=True)
class CrawlResult:
    """Terminal state of one channel after a crawl run."""

    channel_id: str
    status: str
    resume_point: str | None = None
    reason: str | None = None
    pages: int = 0
    messages: int = 0

    @classmethod
    def completed(cls, channel_id: str, *, pages: int = 0, messages: int = 0) -> "CrawlResult":
        return cls(channel_id, STATUS_COMPLETED, pages=pages, messages=messages)

    @classmethod
    def partial(
        cls,
        channel_id: str,
        resume_point: str | None,
        *,
        reason: str | None = None,
        pages: int = 0,
        messages: int = 0,
    ) -> "CrawlResult":
        return cls(
            channel_id,
            STATUS_PARTIAL,
            resume_point=resume_point,
            reason=reason,
            pages=pages,
            messages=messages,
        )

    @classmethod
    def failed(
        cls, channel_id: str, reason: str, *, pages: int = 0, messages: int = 0
    ) -> "CrawlResult":
        return cls(channel_id, STATUS_FAILED, reason=reason, pages=pages, messages=messages)

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass(slots=True)
class OverallResult:
    """Aggregated outcome of a crawl across channels."""

    results: dict[str, CrawlResult] = field(default_factory=dict)
    # Thread listings that could not be fetched; their threads were never crawled.
    discovery_errors: list[str] = field(default_factory=list)

    @property
    def all_completed(self) -> bool:
        if self.discovery_errors:
            return False
        return all(result.is_completed for result in self.results.values())

    @property
    def status(self) -> str:
        return "all_completed" if self.all_completed else "partial_failure"

    @property
    def exit_code(self) -> int:
        return 0 if self.all_completed else 1

    def failed_channels(self) -> list[str]:
        return [key for key, value in self.results.items() if value.status == STATUS_FAILED]

    def partial_channels(self) -> list[str]:
        return [key for key, value in self.results.items() if value.status == STATUS_PARTIAL]


@dataclass(slots=True)
class RuntimeOptions:
    """Tunable behaviour of the crawl."""

    page_size: int = 100
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    request_timeout: float = 15.0
    refresh_complete: bool = False


@dataclass(slots=True)
class NetworkOptions:
    """Proxy and client identity overrides."""

    discord_proxy_url: str | None = None
    discord_proxy_login: str | None = None
    discord_proxy_password: str | None = None
    discord_user_agent: str | None = None
