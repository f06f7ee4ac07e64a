"""Error taxonomy of the crawler."""

from __future__ import annotations


class CrawlError(Exception):
    """Base class for failures raised while fetching channel history."""


class RecoverableError(CrawlError):
    """Transient failure that is worth retrying (timeouts, 5xx, 429)."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
        is_global: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.is_global = is_global


class FatalError(CrawlError):
    """Failure that retrying cannot fix: auth, missing channel, bad payload."""

    def __init__(self, kind: str, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    def __str__(self) -> str:
        return f"{self.kind}: {self.args[0]}"


class RetriesExhausted(CrawlError):
    """Recoverable failures persisted past the retry budget."""

    def __init__(self, attempts: int, last_error: CrawlError | None) -> None:
        super().__init__(f"giving up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class CrawlStopped(CrawlError):
    """A stop was requested while a request was pending or waiting to retry."""
