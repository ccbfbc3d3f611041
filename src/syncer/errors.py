"""
Exception hierarchy for the syncer.

Errors are scoped by how far they propagate:

    - ``ConfigError`` is fatal at startup; no cycle runs.
    - ``ChannelFetchError`` aborts one channel for one cycle.
    - ``DeliveryError`` fails one item for one cycle.
    - ``SourceError`` subclasses are raised by ``MessageSource``
      implementations and translated by the fetcher.
"""

from __future__ import annotations

from typing import Optional


class SyncerError(Exception):
    """Base class for all syncer errors."""


class ConfigError(SyncerError):
    """Missing or malformed configuration; the service must not start."""


# ---------------------------------------------------------------------------
# Upstream source
# ---------------------------------------------------------------------------


class SourceError(SyncerError):
    """Generic upstream failure.

    Args:
        message: Human-readable description.
        code: Upstream error code (e.g. Slack's ``"channel_not_found"``).
    """

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class RateLimitedError(SourceError):
    """The upstream asked us to slow down.

    ``retry_after`` carries the upstream's hint in seconds, if any.
    """

    def __init__(
        self,
        message: str = "rate limited",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, code="ratelimited")
        self.retry_after = retry_after


class ChannelNotFoundError(SourceError):
    """The channel does not exist or is invisible to the bot."""


class ChannelAccessError(SourceError):
    """The bot lost (or never had) access to the channel."""


class ThreadNotFoundError(SourceError):
    """The thread does not exist in the channel, or has no messages."""


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


class ChannelFetchError(SyncerError):
    """Fetching a channel failed for this cycle."""

    def __init__(self, channel_id: str, message: str) -> None:
        super().__init__(message)
        self.channel_id = channel_id


class DeliveryError(SyncerError):
    """An envelope could not be delivered within the retry budget."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code
