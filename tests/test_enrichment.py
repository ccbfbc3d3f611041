"""
Unit tests for the enrichment stage and its lookup cache.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from syncer.enrichment import Enricher, LookupCache
from syncer.errors import SourceError
from syncer.models import UNKNOWN_AUTHOR_NAME, Author, ChannelMeta, RawItem

ALICE = Author(id="U1", name="Alice", email="alice@example.com", avatar="a.png")
GENERAL = ChannelMeta(id="C1", name="general", topic="chit-chat")


@pytest.fixture
def source():
    src = AsyncMock()
    src.get_author.return_value = ALICE
    src.get_channel_info.return_value = GENERAL
    return src


class TestAuthorResolution:
    @pytest.mark.asyncio
    async def test_user_author_resolved_and_email_stripped(self, source):
        enricher = Enricher(source)
        enriched = await enricher.enrich(RawItem("100.1", "C1", text="hi", user_id="U1"), GENERAL)

        assert enriched.author.name == "Alice"
        assert enriched.author.email is None
        assert enriched.channel is GENERAL

    @pytest.mark.asyncio
    async def test_email_kept_when_enabled(self, source):
        enricher = Enricher(source, include_user_emails=True)
        enriched = await enricher.enrich(RawItem("100.1", "C1", text="hi", user_id="U1"), GENERAL)
        assert enriched.author.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_lookups_are_cached(self, source):
        enricher = Enricher(source)
        for position in ("100.1", "100.2", "100.3"):
            await enricher.enrich(RawItem(position, "C1", text="x", user_id="U1"), GENERAL)
        source.get_author.assert_awaited_once_with("U1")
        assert enricher.cache.authors["U1"] is ALICE

    @pytest.mark.asyncio
    async def test_clear_forces_fresh_lookup(self, source):
        enricher = Enricher(source)
        item = RawItem("100.1", "C1", text="x", user_id="U1")
        await enricher.enrich(item, GENERAL)
        enricher.cache.clear()
        assert len(enricher.cache) == 0
        await enricher.enrich(item, GENERAL)
        assert source.get_author.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_lookup_degrades_to_placeholder(self, source):
        source.get_author.side_effect = SourceError("boom")
        enricher = Enricher(source)

        enriched = await enricher.enrich(RawItem("100.1", "C1", text="x", user_id="U1"), GENERAL)

        assert enriched.author.is_placeholder
        assert enriched.author.name == UNKNOWN_AUTHOR_NAME
        assert enriched.author.id is None
        assert "U1" not in enricher.cache.authors

    @pytest.mark.asyncio
    async def test_missing_user_degrades_and_is_not_cached(self, source):
        source.get_author.return_value = None
        enricher = Enricher(source)
        item = RawItem("100.1", "C1", text="x", user_id="U404")

        first = await enricher.enrich(item, GENERAL)
        await enricher.enrich(item, GENERAL)

        assert first.author.is_placeholder
        assert source.get_author.await_count == 2

    @pytest.mark.asyncio
    async def test_bot_author_built_locally(self, source):
        enricher = Enricher(source)
        item = RawItem("100.1", "C1", text="beep", bot_id="B1", username="deploybot")

        enriched = await enricher.enrich(item, GENERAL)

        assert enriched.author == Author(id="B1", name="deploybot", is_bot=True)
        source.get_author.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bot_without_username(self, source):
        enricher = Enricher(source)
        enriched = await enricher.enrich(RawItem("100.1", "C1", text="x", bot_id="B1"), GENERAL)
        assert enriched.author.name == "Bot"

    @pytest.mark.asyncio
    async def test_no_author_at_all(self, source):
        enricher = Enricher(source)
        enriched = await enricher.enrich(RawItem("100.1", "C1", text="x"), GENERAL)
        assert enriched.author is None
        assert enriched.message_dict()["user"] is None


class TestChannelMeta:
    @pytest.mark.asyncio
    async def test_cached_after_first_lookup(self, source):
        enricher = Enricher(source)
        assert await enricher.channel_meta("C1") is GENERAL
        assert await enricher.channel_meta("C1") is GENERAL
        source.get_channel_info.assert_awaited_once_with("C1")

    @pytest.mark.asyncio
    async def test_failure_returns_placeholder(self, source):
        source.get_channel_info.side_effect = SourceError("nope")
        enricher = Enricher(source)

        meta = await enricher.channel_meta("C1")

        assert meta == ChannelMeta.placeholder("C1")
        assert meta.name is None
        assert "C1" not in enricher.cache.channels

    @pytest.mark.asyncio
    async def test_shared_cache(self, source):
        cache = LookupCache()
        await Enricher(source, cache=cache).channel_meta("C1")
        await Enricher(source, cache=cache).channel_meta("C1")
        source.get_channel_info.assert_awaited_once()


class TestConcurrentLookups:
    @pytest.mark.asyncio
    async def test_one_author_lookup_per_batch(self, source):
        enricher = Enricher(source)
        batch = [RawItem(f"100.{n}", "C1", text="x", user_id="U1") for n in range(1, 51)]

        enriched = await asyncio.gather(*(enricher.enrich(item, GENERAL) for item in batch))

        source.get_author.assert_awaited_once_with("U1")
        assert {e.author.name for e in enriched} == {"Alice"}

    @pytest.mark.asyncio
    async def test_one_channel_lookup_for_concurrent_callers(self, source):
        enricher = Enricher(source)
        metas = await asyncio.gather(*(enricher.channel_meta("C1") for _ in range(10)))
        assert all(meta is GENERAL for meta in metas)
        source.get_channel_info.assert_awaited_once_with("C1")

    @pytest.mark.asyncio
    async def test_shared_failure_is_not_remembered(self, source):
        source.get_author.side_effect = [SourceError("ratelimited"), ALICE]
        enricher = Enricher(source)
        batch = [RawItem(f"100.{n}", "C1", text="x", user_id="U1") for n in range(1, 4)]

        first = await asyncio.gather(*(enricher.enrich(item, GENERAL) for item in batch))
        assert all(e.author.is_placeholder for e in first)
        assert source.get_author.await_count == 1

        later = await enricher.enrich(batch[0], GENERAL)
        assert later.author.name == "Alice"
        assert source.get_author.await_count == 2

    @pytest.mark.asyncio
    async def test_distinct_authors_looked_up_separately(self, source):
        enricher = Enricher(source)
        await asyncio.gather(
            enricher.enrich(RawItem("100.1", "C1", text="x", user_id="U1"), GENERAL),
            enricher.enrich(RawItem("100.2", "C1", text="x", user_id="U2"), GENERAL),
        )
        assert sorted(c.args[0] for c in source.get_author.await_args_list) == ["U1", "U2"]


class TestPayloadShape:
    def test_reply_with_reactions(self):
        from syncer.models import EnrichedItem, Envelope

        item = RawItem(
            "100.2",
            "C1",
            text="reply",
            user_id="U1",
            thread_position="100.1",
            reactions=[{"name": "tada", "count": 2, "users": ["U1", "U2"]}],
        )
        payload = Envelope(EnrichedItem(item, GENERAL, ALICE)).to_payload()

        assert payload["source"] == "slack"
        assert payload["channel"]["name"] == "general"
        assert payload["message"]["isReply"] is True
        assert payload["message"]["parentTimestamp"] == "100.1"
        assert payload["message"]["reactions"][0]["name"] == "tada"
        assert payload["message"]["user"]["isBot"] is False
        assert payload["metadata"]["integrationVersion"] == "1.0.0"

    def test_thread_root_is_not_a_reply(self):
        from syncer.models import EnrichedItem

        item = RawItem("100.1", "C1", text="root", thread_position="100.1")
        message = EnrichedItem(item, GENERAL, None).message_dict()
        assert message["isReply"] is False
        assert "parentTimestamp" not in message
