"""
Sync progress lines for journalctl output.

``ChannelProgress`` tracks one channel's batches within a cycle;
``CycleProgress`` accumulates totals across channels.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("syncer.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration as ``"850ms"``, ``"45s"``, ``"2m 30s"`` or ``"1h 15m"``."""
    if seconds <= 0:
        return "0s"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class ChannelProgress:
    """Tracks delivery progress for a single channel.

    Args:
        channel_index: 1-based index of this channel in the cycle.
        total_channels: Number of channels in the cycle.
        channel_id: Channel being synced.
        total_items: Items fetched for this channel.
    """

    def __init__(
        self,
        channel_index: int,
        total_channels: int,
        channel_id: str,
        total_items: int = 0,
    ) -> None:
        self.channel_index = channel_index
        self.total_channels = total_channels
        self.channel_id = channel_id
        self.total_items = total_items
        self.delivered = 0
        self.failed = 0
        self._start = time.monotonic()

    @property
    def processed(self) -> int:
        return self.delivered + self.failed

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Items processed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    def update(self, delivered: int, failed: int) -> None:
        self.delivered += delivered
        self.failed += failed

    def log_batch(self, batch_number: int, total_batches: int) -> None:
        logger.debug(
            "  [Channel %d/%d] batch %d/%d | %d/%d items | %.1f items/s",
            self.channel_index,
            self.total_channels,
            batch_number,
            total_batches,
            self.processed,
            self.total_items,
            self.rate,
        )

    def log_complete(self) -> None:
        logger.info(
            "  Completed %d/%d: %s | %d delivered, %d failed in %s",
            self.channel_index,
            self.total_channels,
            self.channel_id,
            self.delivered,
            self.failed,
            _format_duration(self.elapsed_seconds),
        )


class CycleProgress:
    """Totals across every channel in one sync cycle."""

    def __init__(self, total_channels: int) -> None:
        self.total_channels = total_channels
        self.channels_completed = 0
        self.channels_errored = 0
        self.delivered = 0
        self.failed = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def update_from_channel(self, channel: ChannelProgress) -> None:
        self.delivered += channel.delivered
        self.failed += channel.failed
        self.channels_completed += 1

    def mark_errored(self) -> None:
        self.channels_errored += 1
        self.channels_completed += 1

    def log_cycle_progress(self) -> None:
        logger.info(
            "  Cycle: %d/%d channels (%d errored) | %d delivered, %d failed | %s",
            self.channels_completed,
            self.total_channels,
            self.channels_errored,
            self.delivered,
            self.failed,
            _format_duration(self.elapsed_seconds),
        )
