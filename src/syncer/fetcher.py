"""
Paginated, rate-limit-aware message fetching.

Pulls every item newer than a cursor, page by page, up to a hard cap so a
single cycle's duration stays bounded.  Pages arrive newest-first and are
reversed before returning: the orchestrator needs oldest-first order to
advance the cursor monotonically.  ``fetch_thread`` pages through one
thread the same way for on-demand forwarding.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from syncer.errors import (
    ChannelAccessError,
    ChannelFetchError,
    ChannelNotFoundError,
    RateLimitedError,
    SourceError,
)
from syncer.models import ItemPage, RawItem, parse_cursor
from syncer.source import MessageSource

logger = logging.getLogger("syncer.fetcher")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitRetry:
    """Backoff policy for throttled page requests.

    ``attempts`` counts every request including the first.  The wait after
    throttled attempt *k* (1-based) is ``base_delay * 2**(k-1)``, or the
    upstream ``Retry-After`` hint when that is longer.
    """

    attempts: int = 3
    base_delay: float = 2.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.base_delay * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


class PaginatedFetcher:
    """Fetch new items for a channel.

    Args:
        source: Upstream capability.
        page_size: Items requested per page.
        max_pages: Hard cap on pages per channel per cycle.
        retry: Rate-limit backoff policy.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        source: MessageSource,
        page_size: int = 1000,
        max_pages: int = 10,
        retry: Optional[RateLimitRetry] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._source = source
        self._page_size = max(1, page_size)
        self._max_pages = max(1, max_pages)
        self._retry = retry or RateLimitRetry()
        self._sleep = sleep

    async def fetch(self, channel_id: str, since: str) -> List[RawItem]:
        """Return deliverable items newer than *since*, oldest-first.

        Raises:
            ChannelFetchError: The channel cannot be read this cycle.
        """
        try:
            collected, page_count = await self._collect_pages(
                channel_id,
                lambda token: self._source.list_items(
                    channel_id, since, page_token=token, limit=self._page_size
                ),
            )
        except ChannelNotFoundError as exc:
            raise ChannelFetchError(channel_id, str(exc)) from exc
        except ChannelAccessError as exc:
            raise ChannelFetchError(channel_id, str(exc)) from exc
        except RateLimitedError as exc:
            raise ChannelFetchError(
                channel_id,
                f"Rate limited fetching {channel_id} after "
                f"{self._retry.attempts} attempts",
            ) from exc
        except SourceError as exc:
            raise ChannelFetchError(
                channel_id, f"Error fetching {channel_id}: {exc}"
            ) from exc

        logger.info(
            "Fetched %d total items from %s (%d page(s))",
            len(collected),
            channel_id,
            page_count,
        )

        collected.reverse()
        floor = parse_cursor(since)
        return [
            item
            for item in collected
            if item.has_content and (floor is None or item.sort_key > floor)
        ]

    async def fetch_thread(self, channel_id: str, thread_position: str) -> List[RawItem]:
        """Return every message of a thread, parent first.

        Raises:
            SourceError: Any upstream failure, after rate-limit retries
                (``ThreadNotFoundError`` for an unknown thread).
        """
        label = f"{channel_id}/{thread_position}"
        collected, page_count = await self._collect_pages(
            label,
            lambda token: self._source.get_thread_replies(
                channel_id, thread_position, page_token=token, limit=self._page_size
            ),
        )
        logger.info(
            "Fetched %d messages from thread %s (%d page(s))",
            len(collected),
            label,
            page_count,
        )
        return sorted(collected, key=lambda item: item.sort_key)

    async def _collect_pages(
        self, label: str, next_page: Callable[[Optional[str]], Awaitable[ItemPage]]
    ) -> Tuple[List[RawItem], int]:
        collected: List[RawItem] = []
        page_token: Optional[str] = None
        page_count = 0

        while True:
            page_count += 1
            page = await self._with_retry(label, lambda: next_page(page_token))
            collected.extend(page.items)
            logger.debug(
                "Fetched page %d: %d items from %s", page_count, len(page.items), label
            )

            page_token = page.next_page_token
            if not page_token:
                break
            if page_count >= self._max_pages:
                logger.warning(
                    "Reached max pages (%d) for %s, stopping pagination",
                    self._max_pages,
                    label,
                )
                break
        return collected, page_count

    async def _with_retry(
        self, label: str, request: Callable[[], Awaitable[ItemPage]]
    ) -> ItemPage:
        attempts = max(1, self._retry.attempts)
        attempt = 1
        while True:
            try:
                return await request()
            except RateLimitedError as exc:
                if attempt >= attempts:
                    raise
                delay = self._retry.delay_for(attempt, exc.retry_after)
                logger.warning(
                    "Rate limited on %s, retrying in %.1fs (attempt %d/%d)",
                    label,
                    delay,
                    attempt,
                    attempts,
                )
                await self._sleep(delay)
                attempt += 1
