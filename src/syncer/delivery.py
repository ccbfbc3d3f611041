"""
Webhook delivery client.

POSTs each envelope as JSON to the configured endpoint.  Any 2xx response
is success; non-2xx, timeouts and transport errors are retried with
exponential backoff until the attempt budget runs out, at which point a
``DeliveryError`` is raised for that single envelope.

Retry schedule (defaults):
    - Attempt 1: immediate
    - Attempt 2: after 2 seconds
    - Attempt 3: after 4 seconds
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from syncer.errors import DeliveryError
from syncer.models import Envelope

logger = logging.getLogger("syncer.delivery")

USER_AGENT = "slack-relay/1.0"

Sleep = Callable[[float], Awaitable[None]]


class _AttemptFailed(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WebhookDeliveryClient:
    """Deliver envelopes to an HTTP(S) webhook.

    Args:
        url: Target endpoint.
        api_key: Optional bearer token for the ``Authorization`` header.
        timeout: Per-attempt timeout in seconds.
        max_attempts: Total attempts per envelope.
        backoff_base: Wait ``backoff_base ** k`` seconds after failed attempt *k*.
        http_client: Pre-built ``httpx.AsyncClient`` (not closed by us).
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not url:
            raise ValueError("webhook url is required")
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    async def __aenter__(self) -> "WebhookDeliveryClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def deliver(self, envelope: Envelope) -> Dict[str, Any]:
        """Deliver one envelope.

        Returns:
            The endpoint's acknowledgement (parsed JSON, or a wrapper around
            a non-JSON body).

        Raises:
            DeliveryError: All attempts failed.
        """
        return await self.send_payload(
            envelope.to_payload(),
            label=f"{envelope.channel_id}/{envelope.position}",
        )

    async def send_payload(
        self,
        payload: Dict[str, Any],
        label: str = "payload",
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        attempts = max(1, max_attempts or self._max_attempts)
        attempt = 0

        while True:
            attempt += 1
            try:
                ack = await self._post(payload)
            except _AttemptFailed as exc:
                logger.warning(
                    "Delivery of %s failed (attempt %d/%d): %s",
                    label,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt >= attempts:
                    raise DeliveryError(
                        f"Failed to deliver {label} after {attempts} attempts: {exc}",
                        attempts=attempts,
                        status_code=exc.status_code,
                    ) from exc
                delay = self._backoff_base ** attempt
                logger.info("Retrying %s in %.1fs", label, delay)
                await self._sleep(delay)
                continue
            logger.debug("Delivered %s (attempt %d/%d)", label, attempt, attempts)
            return ack

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        try:
            response = await self._client.post(
                self._url,
                content=json.dumps(payload),
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise _AttemptFailed(f"request timeout after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise _AttemptFailed(f"HTTP request failed: {exc}") from exc

        if not response.is_success:
            raise _AttemptFailed(
                f"webhook returned status {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        body = response.text
        if not body:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"success": True, "data": body}

    async def test_connection(self) -> bool:
        """Send a single-attempt test payload; ``True`` if accepted."""
        payload = {
            "test": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "Connection test from slack-relay",
        }
        try:
            await self.send_payload(payload, label="connection test", max_attempts=1)
        except DeliveryError:
            logger.exception("Webhook connection test failed")
            return False
        return True
