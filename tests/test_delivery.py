"""
Unit tests for WebhookDeliveryClient (HTTP mocked with respx).
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from syncer.delivery import USER_AGENT, WebhookDeliveryClient
from syncer.errors import DeliveryError
from syncer.models import ChannelMeta, EnrichedItem, Envelope, RawItem

URL = "https://hooks.example.com/slack"


def envelope(position="100.1"):
    item = RawItem(position, "C1", text="hello")
    return Envelope(EnrichedItem(item, ChannelMeta(id="C1", name="general"), None))


def make_client(**kwargs):
    sleep = AsyncMock()
    return WebhookDeliveryClient(URL, sleep=sleep, **kwargs), sleep


class TestDeliver:
    @pytest.mark.asyncio
    @respx.mock
    async def test_success_returns_json_ack(self):
        route = respx.post(URL).mock(return_value=httpx.Response(200, json={"id": "abc"}))
        client, sleep = make_client(api_key="secret")

        async with client:
            ack = await client.deliver(envelope())

        assert ack == {"id": "abc"}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["User-Agent"] == USER_AGENT
        assert request.headers["Content-Type"] == "application/json"
        body = json.loads(request.content)
        assert body["message"]["timestamp"] == "100.1"
        assert body["channel"]["id"] == "C1"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_auth_header_without_key(self):
        route = respx.post(URL).mock(return_value=httpx.Response(200, json={}))
        client, _ = make_client()
        async with client:
            await client.deliver(envelope())
        assert "Authorization" not in route.calls.last.request.headers

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_json_body_wrapped(self):
        respx.post(URL).mock(return_value=httpx.Response(202, text="queued"))
        client, _ = make_client()
        async with client:
            assert await client.deliver(envelope()) == {"success": True, "data": "queued"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_body(self):
        respx.post(URL).mock(return_value=httpx.Response(204))
        client, _ = make_client()
        async with client:
            assert await client.deliver(envelope()) == {}

    @pytest.mark.asyncio
    @respx.mock
    async def test_retries_with_backoff_then_succeeds(self):
        route = respx.post(URL).mock(
            side_effect=[
                httpx.Response(500),
                httpx.Response(503),
                httpx.Response(200, json={"ok": True}),
            ]
        )
        client, sleep = make_client()
        async with client:
            assert await client.deliver(envelope()) == {"ok": True}
        assert route.call_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    @respx.mock
    async def test_exhausted_retries_raise_delivery_error(self):
        route = respx.post(URL).mock(return_value=httpx.Response(502, text="bad gateway"))
        client, sleep = make_client()

        async with client:
            with pytest.raises(DeliveryError) as exc_info:
                await client.deliver(envelope())

        assert route.call_count == 3
        assert sleep.await_count == 2
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 502
        assert "C1/100.1" in str(exc_info.value)

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeout_is_retried(self):
        route = respx.post(URL).mock(
            side_effect=[httpx.ReadTimeout("slow"), httpx.Response(200, json={})]
        )
        client, _ = make_client()
        async with client:
            await client.deliver(envelope())
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error_exhausts(self):
        respx.post(URL).mock(side_effect=httpx.ConnectError("refused"))
        client, _ = make_client(max_attempts=2)
        async with client:
            with pytest.raises(DeliveryError) as exc_info:
                await client.deliver(envelope())
        assert exc_info.value.attempts == 2
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_single_attempt_failure_raises_from_last_error(self):
        respx.post(URL).mock(return_value=httpx.Response(503, text="busy"))
        client, sleep = make_client()
        async with client:
            with pytest.raises(DeliveryError) as exc_info:
                await client.send_payload({"ping": 1}, label="ping", max_attempts=1)
        sleep.assert_not_awaited()
        assert exc_info.value.status_code == 503
        assert "status 503" in str(exc_info.value.__cause__)

    def test_requires_url(self):
        with pytest.raises(ValueError):
            WebhookDeliveryClient("")


class TestConnectionCheck:
    @pytest.mark.asyncio
    @respx.mock
    async def test_success(self):
        route = respx.post(URL).mock(return_value=httpx.Response(200, json={}))
        client, _ = make_client()
        async with client:
            assert await client.test_connection() is True
        assert json.loads(route.calls.last.request.content)["test"] is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_single_attempt_on_failure(self):
        route = respx.post(URL).mock(return_value=httpx.Response(500))
        client, sleep = make_client()
        async with client:
            assert await client.test_connection() is False
        assert route.call_count == 1
        sleep.assert_not_awaited()
