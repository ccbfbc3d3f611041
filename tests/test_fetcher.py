"""
Unit tests for PaginatedFetcher: pagination cap, ordering, content
filtering and rate-limit backoff.
"""

from unittest.mock import AsyncMock

import pytest

from syncer.errors import (
    ChannelAccessError,
    ChannelFetchError,
    ChannelNotFoundError,
    RateLimitedError,
    SourceError,
    ThreadNotFoundError,
)
from syncer.fetcher import PaginatedFetcher, RateLimitRetry
from syncer.models import ItemPage, RawItem


def item(position, text="hello", **kwargs):
    return RawItem(position=position, channel_id="C1", text=text, **kwargs)


def make_fetcher(source, **kwargs):
    sleep = AsyncMock()
    fetcher = PaginatedFetcher(source, sleep=sleep, **kwargs)
    return fetcher, sleep


class TestRateLimitRetry:
    def test_exponential_delays(self):
        retry = RateLimitRetry(attempts=3, base_delay=2.0)
        assert retry.delay_for(1) == 2.0
        assert retry.delay_for(2) == 4.0

    def test_retry_after_wins_when_longer(self):
        retry = RateLimitRetry(base_delay=2.0)
        assert retry.delay_for(1, retry_after=30.0) == 30.0
        assert retry.delay_for(2, retry_after=1.0) == 4.0


class TestFetch:
    @pytest.mark.asyncio
    async def test_single_page_reversed_to_oldest_first(self):
        source = AsyncMock()
        source.list_items.return_value = ItemPage(
            items=[item("100.3"), item("100.2"), item("100.1")]
        )
        fetcher, _ = make_fetcher(source)

        items = await fetcher.fetch("C1", "100.0")

        assert [i.position for i in items] == ["100.1", "100.2", "100.3"]
        source.list_items.assert_awaited_once_with(
            "C1", "100.0", page_token=None, limit=1000
        )

    @pytest.mark.asyncio
    async def test_follows_page_tokens(self):
        source = AsyncMock()
        source.list_items.side_effect = [
            ItemPage(items=[item("100.4"), item("100.3")], next_page_token="p2"),
            ItemPage(items=[item("100.2"), item("100.1")], next_page_token=None),
        ]
        fetcher, _ = make_fetcher(source, page_size=2)

        items = await fetcher.fetch("C1", "100.0")

        assert [i.position for i in items] == ["100.1", "100.2", "100.3", "100.4"]
        assert source.list_items.await_args_list[1].kwargs == {
            "page_token": "p2",
            "limit": 2,
        }

    @pytest.mark.asyncio
    async def test_stops_at_max_pages(self):
        source = AsyncMock()
        source.list_items.side_effect = [
            ItemPage(items=[item(f"100.{n}")], next_page_token=f"p{n}")
            for n in range(9, 0, -1)
        ]
        fetcher, _ = make_fetcher(source, max_pages=3)

        items = await fetcher.fetch("C1", "100.0")

        assert source.list_items.await_count == 3
        assert [i.position for i in items] == ["100.7", "100.8", "100.9"]

    @pytest.mark.asyncio
    async def test_drops_items_without_content(self):
        source = AsyncMock()
        source.list_items.return_value = ItemPage(
            items=[
                item("100.4", text=None, files=[{"id": "F1"}]),
                item("100.3", text=None),
                item("100.2", text=None, attachments=[{"text": "a"}]),
                item("100.1", text=""),
            ]
        )
        fetcher, _ = make_fetcher(source)

        items = await fetcher.fetch("C1", "100.0")

        assert [i.position for i in items] == ["100.2", "100.4"]

    @pytest.mark.asyncio
    async def test_drops_items_not_newer_than_since(self):
        """The upstream's exclusive bound is re-checked locally."""
        source = AsyncMock()
        source.list_items.return_value = ItemPage(
            items=[item("100.3"), item("100.2"), item("100.1")]
        )
        fetcher, _ = make_fetcher(source)

        items = await fetcher.fetch("C1", "100.2")

        assert [i.position for i in items] == ["100.3"]

    @pytest.mark.asyncio
    async def test_empty_channel(self):
        source = AsyncMock()
        source.list_items.return_value = ItemPage(items=[])
        fetcher, _ = make_fetcher(source)
        assert await fetcher.fetch("C1", "100.0") == []


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        source = AsyncMock()
        source.list_items.side_effect = [
            RateLimitedError(),
            RateLimitedError(),
            ItemPage(items=[item("100.1")]),
        ]
        fetcher, sleep = make_fetcher(source)

        items = await fetcher.fetch("C1", "100.0")

        assert [i.position for i in items] == ["100.1"]
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_honours_retry_after(self):
        source = AsyncMock()
        source.list_items.side_effect = [
            RateLimitedError(retry_after=10.0),
            ItemPage(items=[]),
        ]
        fetcher, sleep = make_fetcher(source)
        await fetcher.fetch("C1", "100.0")
        sleep.assert_awaited_once_with(10.0)

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_channel(self):
        source = AsyncMock()
        source.list_items.side_effect = RateLimitedError()
        fetcher, sleep = make_fetcher(source)

        with pytest.raises(ChannelFetchError, match="Rate limited fetching C1 after 3 attempts"):
            await fetcher.fetch("C1", "100.0")

        assert source.list_items.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_configurable_attempts(self):
        source = AsyncMock()
        source.list_items.side_effect = RateLimitedError()
        fetcher, _ = make_fetcher(source, retry=RateLimitRetry(attempts=1))
        with pytest.raises(ChannelFetchError):
            await fetcher.fetch("C1", "100.0")
        assert source.list_items.await_count == 1


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ChannelNotFoundError("Channel C1 not found or bot not invited"),
            ChannelAccessError("Bot cannot read channel C1"),
            SourceError("boom", code="internal_error"),
        ],
    )
    async def test_source_errors_become_channel_fetch_error(self, error):
        source = AsyncMock()
        source.list_items.side_effect = error
        fetcher, sleep = make_fetcher(source)

        with pytest.raises(ChannelFetchError) as exc_info:
            await fetcher.fetch("C1", "100.0")

        assert exc_info.value.channel_id == "C1"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_found_message_names_channel(self):
        source = AsyncMock()
        source.list_items.side_effect = ChannelNotFoundError(
            "Channel C1 not found or bot not invited"
        )
        fetcher, _ = make_fetcher(source)
        with pytest.raises(ChannelFetchError, match="not found or bot not invited"):
            await fetcher.fetch("C1", "100.0")


class TestFetchThread:
    @pytest.mark.asyncio
    async def test_pages_through_thread_parent_first(self):
        source = AsyncMock()
        source.get_thread_replies.side_effect = [
            ItemPage(items=[item("100.1"), item("100.2")], next_page_token="p2"),
            ItemPage(items=[item("100.3", text=None)], next_page_token=None),
        ]
        fetcher, _ = make_fetcher(source, page_size=2)

        items = await fetcher.fetch_thread("C1", "100.1")

        assert [i.position for i in items] == ["100.1", "100.2", "100.3"]
        assert source.get_thread_replies.await_args_list[0].args == ("C1", "100.1")
        assert source.get_thread_replies.await_args_list[1].kwargs == {
            "page_token": "p2",
            "limit": 2,
        }

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        source = AsyncMock()
        source.get_thread_replies.side_effect = [
            RateLimitedError(retry_after=5.0),
            ItemPage(items=[item("100.1")]),
        ]
        fetcher, sleep = make_fetcher(source)

        items = await fetcher.fetch_thread("C1", "100.1")

        assert len(items) == 1
        sleep.assert_awaited_once_with(5.0)

    @pytest.mark.asyncio
    async def test_source_errors_propagate_unchanged(self):
        source = AsyncMock()
        source.get_thread_replies.side_effect = ThreadNotFoundError("gone", code="thread_not_found")
        fetcher, _ = make_fetcher(source)
        with pytest.raises(ThreadNotFoundError):
            await fetcher.fetch_thread("C1", "100.1")

    @pytest.mark.asyncio
    async def test_stops_at_max_pages(self):
        source = AsyncMock()
        source.get_thread_replies.side_effect = [
            ItemPage(items=[item(f"100.{n}")], next_page_token=f"p{n}") for n in range(1, 6)
        ]
        fetcher, _ = make_fetcher(source, max_pages=2)

        items = await fetcher.fetch_thread("C1", "100.1")

        assert [i.position for i in items] == ["100.1", "100.2"]
