"""
ReadOnlySlackClient — allowlisted wrapper around the Slack Web API.

The syncer only ever *reads* from Slack.  Every Web API call goes through
:meth:`ReadOnlySlackClient.call`, which rejects any method that is not on
an explicit allowlist of read operations.  A rejected call is logged at
CRITICAL level and raises ``PermissionError`` before any request leaves
the process.

Design principles:
    - Default-deny: anything not in ALLOWED_METHODS is rejected.
    - Audit trail: every call (allowed or blocked) is logged with its
      method name.
    - Transport only: Slack error codes are surfaced as ``SourceError``
      (``RateLimitedError`` for throttling); callers decide what they mean.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional

import httpx

from syncer.errors import RateLimitedError, SourceError

logger = logging.getLogger("syncer.readonly_client")

SLACK_API_BASE = "https://slack.com/api/"

# ---------------------------------------------------------------------------
# Allowed methods: read-only Slack Web API operations.
# Do NOT add chat.postMessage, chat.update, chat.delete, conversations.join,
# reactions.add or any method that mutates workspace state.
# ---------------------------------------------------------------------------
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        # Message retrieval
        "conversations.history",
        "conversations.replies",
        # Channel metadata
        "conversations.info",
        # User metadata
        "users.info",
        # Token check
        "auth.test",
    }
)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ReadOnlySlackClient:
    """Async read-only Slack Web API client.

    Usage::

        async with ReadOnlySlackClient(token) as slack:
            data = await slack.call("conversations.info", channel="C123")

    Args:
        token: Bot token (``xoxb-...``).
        timeout: Per-request timeout in seconds.
        base_url: API root; overridable for tests.
        http_client: Pre-built ``httpx.AsyncClient`` (not closed by us).
    """

    def __init__(
        self,
        token: str,
        timeout: float = 30.0,
        base_url: str = SLACK_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not token:
            raise ValueError("Slack bot token is required")
        self._token = token
        self._timeout = timeout
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._client = http_client
        self._owns_client = http_client is None
        self._allowed = ALLOWED_METHODS

    # ----- async context manager ------------------------------------------

    async def __aenter__(self) -> "ReadOnlySlackClient":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        logger.info("ReadOnlySlackClient opened.")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.info("ReadOnlySlackClient closed.")

    # ----- calls ----------------------------------------------------------

    def _check_allowed(self, method: str) -> None:
        if method in self._allowed:
            logger.debug("ALLOWED  | method=%s", method)
            return
        logger.critical("BLOCKED  | method=%-25s | PermissionError raised", method)
        raise PermissionError(
            f"ReadOnlySlackClient: access to '{method}' is denied. "
            f"Only these methods are permitted: {sorted(self._allowed)}"
        )

    async def call(self, method: str, **params: Any) -> Dict[str, Any]:
        """Invoke an allowlisted Web API method and return its JSON body.

        Raises:
            PermissionError: *method* is not on the allowlist.
            RateLimitedError: HTTP 429 or ``{"error": "ratelimited"}``.
            SourceError: Transport failure or ``{"ok": false}`` response.
        """
        self._check_allowed(method)

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True

        query = {k: v for k, v in params.items() if v is not None}
        for key, value in query.items():
            if isinstance(value, bool):
                query[key] = "true" if value else "false"

        try:
            response = await self._client.get(
                self._base_url + method,
                params=query,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as exc:
            raise SourceError(f"{method} request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(
                f"{method} rate limited",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if not response.is_success:
            raise SourceError(f"{method} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise SourceError(f"{method} returned a non-JSON body") from exc

        if not data.get("ok", False):
            code = data.get("error") or "unknown_error"
            if code == "ratelimited":
                raise RateLimitedError(
                    f"{method} rate limited",
                    retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                )
            raise SourceError(f"{method} failed: {code}", code=code)
        return data

    def __repr__(self) -> str:
        return f"<ReadOnlySlackClient allowed={sorted(self._allowed)}>"
