"""
Synchronization orchestrator — one cycle over a list of channels.

Per channel:

    Idle → CursorRead → Fetching → Enriching → Delivering → CursorCommit → Done
                           └──────────────► Errored ──────────────────────┘

Channels run sequentially.  Within a channel, items are enriched and
delivered concurrently in fixed-size batches; the cursor is committed only
after every batch has resolved.

Cursor rule: the committed cursor is the position of the last item in the
*contiguous* run of successful deliveries, counted from the oldest fetched
item.  An item that exhausts its delivery retries therefore holds the
cursor back, and it is re-fetched (together with everything after it) on
the next cycle.  Later items in the same cycle are still attempted, so the
target may see them twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from syncer.cursor_store import CursorStore
from syncer.delivery import WebhookDeliveryClient
from syncer.enrichment import Enricher
from syncer.errors import ChannelFetchError, DeliveryError
from syncer.fetcher import PaginatedFetcher
from syncer.models import (
    ChannelMeta,
    ChannelResult,
    ChannelState,
    Envelope,
    RawItem,
    SyncError,
    SyncResult,
    cursor_to_datetime,
)
from syncer.progress import ChannelProgress, CycleProgress

logger = logging.getLogger("syncer.orchestrator")

AUDIT_SERVICE = "syncer"


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    position: str
    delivered: bool
    error: Optional[str] = None


def contiguous_cursor(outcomes: Sequence[ItemOutcome]) -> Optional[str]:
    """Position of the last success before the first failure (oldest-first)."""
    committed: Optional[str] = None
    for outcome in outcomes:
        if not outcome.delivered:
            break
        committed = outcome.position
    return committed


class SyncOrchestrator:
    """Coordinates cursor store, fetcher, enricher and delivery client.

    Args:
        store: Cursor store (sole owner of persisted progress).
        fetcher: Paginated fetcher.
        enricher: Enrichment stage.
        delivery: Webhook delivery client.
        batch_size: Items enriched/delivered concurrently per batch.
        batch_delay: Pause between batches, in seconds.
        audit: Optional ``AuditLogger``.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        store: CursorStore,
        fetcher: PaginatedFetcher,
        enricher: Enricher,
        delivery: WebhookDeliveryClient,
        batch_size: int = 50,
        batch_delay: float = 0.1,
        audit: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._enricher = enricher
        self._delivery = delivery
        self._batch_size = max(1, batch_size)
        self._batch_delay = max(0.0, batch_delay)
        self._audit = audit
        self._sleep = sleep
        self._cycle_lock = asyncio.Lock()

    async def _audit_log(self, action: str, details: Dict[str, Any], success: bool) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log(AUDIT_SERVICE, action, details, success=success)
        except Exception:
            logger.warning("Audit log write failed for %s", action, exc_info=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, channel_ids: Iterable[str]) -> SyncResult:
        """Run one synchronization cycle.

        Never raises for channel- or item-level failures; they are reported
        in the returned ``SyncResult``.  Concurrent calls are serialized.
        """
        channels = list(dict.fromkeys(c for c in channel_ids if c))
        async with self._cycle_lock:
            result = SyncResult()
            start = time.monotonic()
            logger.info("Starting sync of %d channels", len(channels))
            await self._audit_log("sync_cycle_start", {"channels": channels}, success=True)

            cycle_progress = CycleProgress(total_channels=len(channels))
            for index, channel_id in enumerate(channels, start=1):
                channel_result = await self.sync_channel(
                    channel_id, channel_index=index, total_channels=len(channels),
                    cycle_progress=cycle_progress,
                )
                result.add(channel_result)
                if index % 5 == 0:
                    cycle_progress.log_cycle_progress()

            result.duration_seconds = time.monotonic() - start
            logger.info(
                "Sync complete: %d fetched, %d delivered, %d errors across %d channels",
                result.total_fetched,
                result.total_delivered,
                len(result.errors),
                len(channels),
            )
            await self._audit_log(
                "sync_cycle",
                {
                    "channels": len(channels),
                    "fetched": result.total_fetched,
                    "delivered": result.total_delivered,
                    "errors": len(result.errors),
                    "elapsed_seconds": round(result.duration_seconds, 1),
                },
                success=not result.errors,
            )
            return result

    # ------------------------------------------------------------------
    # Channel
    # ------------------------------------------------------------------

    async def sync_channel(
        self,
        channel_id: str,
        channel_index: int = 1,
        total_channels: int = 1,
        cycle_progress: Optional[CycleProgress] = None,
    ) -> ChannelResult:
        result = ChannelResult(channel_id=channel_id)

        result.state = ChannelState.CURSOR_READ
        try:
            since = await self._store.get(channel_id)
        except Exception as exc:
            logger.error("Failed to read cursor for %s: %s", channel_id, exc)
            result.state = ChannelState.ERRORED
            result.errors.append(SyncError(channel_id, "cursor", f"cursor read failed: {exc}"))
            if cycle_progress is not None:
                cycle_progress.mark_errored()
            await self._audit_channel(result)
            return result
        result.since = since
        logger.debug("Syncing %s since %s", channel_id, since)

        result.state = ChannelState.FETCHING
        try:
            items = await self._fetcher.fetch(channel_id, since)
        except ChannelFetchError as exc:
            logger.error("Error fetching channel %s: %s", channel_id, exc)
            result.state = ChannelState.ERRORED
            result.errors.append(SyncError(channel_id, "fetch", str(exc)))
            if cycle_progress is not None:
                cycle_progress.mark_errored()
            await self._audit_channel(result)
            return result

        result.fetched = len(items)
        progress = ChannelProgress(channel_index, total_channels, channel_id, len(items))
        if not items:
            logger.debug("No new items in %s", channel_id)
            result.state = ChannelState.DONE
            if cycle_progress is not None:
                cycle_progress.update_from_channel(progress)
            await self._audit_channel(result)
            return result

        result.state = ChannelState.ENRICHING
        channel_meta = await self._enricher.channel_meta(channel_id)

        result.state = ChannelState.DELIVERING
        outcomes = await self._process_batches(items, channel_meta, progress)
        for outcome in outcomes:
            if outcome.delivered:
                result.delivered += 1
            else:
                result.failed += 1
                result.errors.append(
                    SyncError(
                        channel_id,
                        "delivery",
                        outcome.error or "delivery failed",
                        position=outcome.position,
                    )
                )

        result.state = ChannelState.CURSOR_COMMIT
        commit = contiguous_cursor(outcomes)
        if commit is not None:
            try:
                if await self._store.set(channel_id, commit):
                    result.committed_cursor = commit
            except Exception as exc:
                logger.exception("Failed to persist cursor for %s", channel_id)
                result.errors.append(
                    SyncError(channel_id, "commit", f"cursor persist failed: {exc}", position=commit)
                )
        elif result.failed:
            logger.warning(
                "Oldest item %s in %s was not delivered; cursor held at %s",
                outcomes[0].position,
                channel_id,
                since,
            )

        result.state = ChannelState.DONE
        progress.log_complete()
        if cycle_progress is not None:
            cycle_progress.update_from_channel(progress)
        await self._audit_channel(result)
        return result

    async def _audit_channel(self, result: ChannelResult) -> None:
        await self._audit_log(
            "sync_channel",
            {
                "channel_id": result.channel_id,
                "state": result.state.value,
                "since": result.since,
                "fetched": result.fetched,
                "delivered": result.delivered,
                "failed": result.failed,
                "committed_cursor": result.committed_cursor,
            },
            success=result.success,
        )

    async def _process_batches(
        self,
        items: List[RawItem],
        channel_meta: ChannelMeta,
        progress: ChannelProgress,
    ) -> List[ItemOutcome]:
        outcomes: List[ItemOutcome] = []
        total_batches = (len(items) + self._batch_size - 1) // self._batch_size

        for start in range(0, len(items), self._batch_size):
            batch = items[start:start + self._batch_size]
            batch_outcomes = await asyncio.gather(
                *(self._process_item(item, channel_meta) for item in batch)
            )
            outcomes.extend(batch_outcomes)

            delivered = sum(1 for o in batch_outcomes if o.delivered)
            progress.update(delivered, len(batch_outcomes) - delivered)
            progress.log_batch(start // self._batch_size + 1, total_batches)

            if start + self._batch_size < len(items) and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

        return outcomes

    async def _process_item(self, item: RawItem, channel_meta: ChannelMeta) -> ItemOutcome:
        enriched = await self._enricher.enrich(item, channel_meta)
        try:
            await self._delivery.deliver(Envelope(enriched))
        except DeliveryError as exc:
            logger.error(
                "Failed to send message %s from %s: %s",
                item.position,
                item.channel_id,
                exc,
            )
            return ItemOutcome(item.position, delivered=False, error=str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error delivering %s from %s", item.position, item.channel_id
            )
            return ItemOutcome(item.position, delivered=False, error=str(exc))
        return ItemOutcome(item.position, delivered=True)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self, channel_ids: Iterable[str]) -> Dict[str, Any]:
        """Per-channel cursor position and how long ago it was."""
        now = datetime.now(timezone.utc)
        channels: Dict[str, Any] = {}
        for channel_id in channel_ids:
            cursor = await self._store.get(channel_id)
            moment = cursor_to_datetime(cursor) or now
            channels[channel_id] = {
                "last_processed_cursor": cursor,
                "last_processed_date": moment.isoformat(),
                "minutes_since_last_poll": int((now - moment).total_seconds() // 60),
            }
        return {"channels": channels, "last_polled": now.isoformat()}
