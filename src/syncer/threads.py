"""
On-demand thread forwarding.

Fetches a whole thread (parent plus every reply), enriches each message
through the shared ``Enricher`` and delivers the thread as one payload.
Cursors are never read or written here: forwarding a thread is independent
of the per-channel sync.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from syncer.delivery import WebhookDeliveryClient
from syncer.enrichment import Enricher
from syncer.errors import DeliveryError, SourceError, ThreadNotFoundError
from syncer.fetcher import PaginatedFetcher
from syncer.models import DEFAULT_THREAD_EMOJI, ThreadEnvelope

logger = logging.getLogger("syncer.threads")

AUDIT_SERVICE = "syncer"


class ThreadForwarder:
    """Fetch, enrich and deliver a single thread.

    Args:
        fetcher: Paginated fetcher (thread pages, rate-limit retry).
        enricher: Enrichment stage; its cache is shared with the sync loop.
        delivery: Webhook delivery client.
        emoji: Reported as ``metadata.emoji`` in the payload.
        audit: Optional ``AuditLogger``.
    """

    def __init__(
        self,
        fetcher: PaginatedFetcher,
        enricher: Enricher,
        delivery: WebhookDeliveryClient,
        emoji: str = DEFAULT_THREAD_EMOJI,
        audit: Any = None,
    ) -> None:
        self._fetcher = fetcher
        self._enricher = enricher
        self._delivery = delivery
        self._emoji = emoji
        self._audit = audit

    async def build_envelope(self, channel_id: str, thread_position: str) -> ThreadEnvelope:
        """Fetch and enrich the thread without delivering it.

        Raises:
            ThreadNotFoundError: The thread is unknown or empty.
            SourceError: Any other upstream failure.
        """
        items = await self._fetcher.fetch_thread(channel_id, thread_position)
        if not items:
            raise ThreadNotFoundError(
                f"Thread {thread_position} in channel {channel_id} has no messages"
            )
        channel = await self._enricher.channel_meta(channel_id)
        enriched = await asyncio.gather(
            *(self._enricher.enrich(item, channel) for item in items)
        )
        return ThreadEnvelope(
            thread_position=thread_position,
            channel=channel,
            messages=list(enriched),
            emoji=self._emoji,
        )

    async def forward(self, channel_id: str, thread_position: str) -> Dict[str, Any]:
        """Deliver the thread as one payload and return the acknowledgement.

        Raises:
            SourceError: The thread could not be fetched.
            DeliveryError: The webhook rejected the payload after retries.
        """
        label = f"thread {channel_id}/{thread_position}"
        details: Dict[str, Any] = {"channel_id": channel_id, "thread": thread_position}
        try:
            envelope = await self.build_envelope(channel_id, thread_position)
            details["messages"] = len(envelope.messages)
            ack = await self._delivery.send_payload(envelope.to_payload(), label=label)
        except (SourceError, DeliveryError) as exc:
            logger.error("Failed to forward %s: %s", label, exc)
            details["error"] = str(exc)
            await self._audit_log(details, success=False)
            raise

        logger.info("Forwarded %s (%d messages)", label, len(envelope.messages))
        await self._audit_log(details, success=True)
        return ack

    async def _audit_log(self, details: Dict[str, Any], success: bool) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log(AUDIT_SERVICE, "thread_forward", details, success=success)
        except Exception:
            logger.warning("Audit log write failed for thread_forward", exc_info=True)
