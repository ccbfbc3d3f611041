"""
Enrichment stage — attaches author and channel context to raw items.

Enrichment is best-effort: a failed or empty lookup degrades to a
placeholder and is never retried or surfaced as a sync error.  Successful
lookups are cached in a ``LookupCache`` owned by the ``Enricher`` for the
life of the process.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from syncer.models import Author, ChannelMeta, EnrichedItem, RawItem
from syncer.source import MessageSource

logger = logging.getLogger("syncer.enrichment")


class LookupCache:
    """Unbounded author/channel cache; entries live until :meth:`clear`."""

    def __init__(self) -> None:
        self.authors: Dict[str, Author] = {}
        self.channels: Dict[str, ChannelMeta] = {}

    def clear(self) -> None:
        logger.info(
            "Clearing lookup cache (%d authors, %d channels)",
            len(self.authors),
            len(self.channels),
        )
        self.authors.clear()
        self.channels.clear()

    def __len__(self) -> int:
        return len(self.authors) + len(self.channels)


class Enricher:
    """Resolve authors and channel metadata for raw items.

    Concurrent lookups for the same key share one in-flight upstream call,
    so a batch of items from one author costs a single ``users.info``.

    Args:
        source: Upstream capability used for lookups.
        cache: Shared cache; a fresh one is created if omitted.
        include_user_emails: Keep author emails in the output.
    """

    def __init__(
        self,
        source: MessageSource,
        cache: Optional[LookupCache] = None,
        include_user_emails: bool = False,
    ) -> None:
        self._source = source
        self.cache = cache if cache is not None else LookupCache()
        self._include_user_emails = include_user_emails
        self._pending: Dict[Tuple[str, str], "asyncio.Future[Any]"] = {}

    def _forget(self, key: Tuple[str, str], task: "asyncio.Future[Any]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _shared_lookup(
        self, key: Tuple[str, str], lookup: Callable[[str], Awaitable[Any]]
    ) -> Any:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(lookup(key[1]))
            self._pending[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    async def channel_meta(self, channel_id: str) -> ChannelMeta:
        cached = self.cache.channels.get(channel_id)
        if cached is not None:
            return cached
        try:
            meta = await self._shared_lookup(
                ("channel", channel_id), self._source.get_channel_info
            )
        except Exception as exc:
            logger.warning("Failed to fetch channel info for %s: %s", channel_id, exc)
            return ChannelMeta.placeholder(channel_id)
        self.cache.channels[channel_id] = meta
        return meta

    async def _resolve_author(self, user_id: str) -> Author:
        cached = self.cache.authors.get(user_id)
        if cached is not None:
            return cached
        try:
            author = await self._shared_lookup(("author", user_id), self._source.get_author)
        except Exception as exc:
            logger.warning("Failed to fetch user %s: %s", user_id, exc)
            return Author.placeholder()
        if author is None:
            return Author.placeholder()
        self.cache.authors[user_id] = author
        return author

    async def enrich(self, item: RawItem, channel: ChannelMeta) -> EnrichedItem:
        """Return *item* with author and channel context.  Never raises."""
        author: Optional[Author]
        if item.user_id:
            author = await self._resolve_author(item.user_id)
            if not self._include_user_emails and author.email is not None:
                author = replace(author, email=None)
        elif item.bot_id:
            author = Author.for_bot(item)
        else:
            author = None
        return EnrichedItem(item=item, channel=channel, author=author)
