"""
Upstream message source capability.

``MessageSource`` is the seam between the sync engine and whatever system
holds the messages.  The engine relies only on this interface; the Slack
implementation translates Web API responses and error codes into the
syncer's model and error types.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from syncer.errors import (
    ChannelAccessError,
    ChannelNotFoundError,
    SourceError,
    ThreadNotFoundError,
)
from syncer.models import Author, ChannelMeta, ItemPage, RawItem
from syncer.readonly_client import ReadOnlySlackClient

logger = logging.getLogger("syncer.source")

_ACCESS_ERRORS = frozenset(
    {"not_in_channel", "missing_scope", "access_denied", "is_archived", "not_authed"}
)


class MessageSource(ABC):
    """Read-only access to channels, their messages and their authors."""

    @abstractmethod
    async def list_items(
        self,
        channel_id: str,
        since: str,
        page_token: Optional[str] = None,
        limit: int = 1000,
    ) -> ItemPage:
        """Return one page of items strictly newer than *since*, newest-first.

        Raises:
            RateLimitedError: The upstream throttled the request.
            ChannelNotFoundError: The channel does not exist.
            ChannelAccessError: The channel exists but is not readable.
            SourceError: Any other upstream failure.
        """
        ...

    @abstractmethod
    async def get_thread_replies(
        self,
        channel_id: str,
        thread_position: str,
        page_token: Optional[str] = None,
        limit: int = 1000,
    ) -> ItemPage:
        """Return one page of a thread, oldest-first, parent included.

        Raises:
            ThreadNotFoundError: The thread does not exist.
            RateLimitedError: The upstream throttled the request.
            SourceError: Any other upstream failure.
        """
        ...

    @abstractmethod
    async def get_author(self, author_id: str) -> Optional[Author]:
        """Return the author, or ``None`` if it no longer exists."""
        ...

    @abstractmethod
    async def get_channel_info(self, channel_id: str) -> ChannelMeta:
        ...


def _raise_for_channel(channel_id: str, exc: SourceError) -> None:
    if exc.code == "channel_not_found":
        raise ChannelNotFoundError(
            f"Channel {channel_id} not found or bot not invited", code=exc.code
        ) from exc
    if exc.code in _ACCESS_ERRORS:
        raise ChannelAccessError(
            f"Bot cannot read channel {channel_id} ({exc.code}). "
            f"Invite with /invite @bot",
            code=exc.code,
        ) from exc
    raise exc


class SlackMessageSource(MessageSource):
    """``MessageSource`` backed by the Slack Web API.

    Args:
        client: Read-only Slack client (already opened by the caller).
    """

    def __init__(self, client: ReadOnlySlackClient) -> None:
        self._client = client

    async def list_items(
        self,
        channel_id: str,
        since: str,
        page_token: Optional[str] = None,
        limit: int = 1000,
    ) -> ItemPage:
        try:
            data = await self._client.call(
                "conversations.history",
                channel=channel_id,
                oldest=since,
                inclusive=False,
                limit=limit,
                cursor=page_token or None,
            )
        except SourceError as exc:
            _raise_for_channel(channel_id, exc)
            raise
        return self._page(channel_id, data)

    @staticmethod
    def _page(channel_id: str, data: Dict[str, Any]) -> ItemPage:
        items = [
            RawItem.from_slack(channel_id, message)
            for message in data.get("messages") or []
            if message.get("ts")
        ]
        next_token = (data.get("response_metadata") or {}).get("next_cursor") or None
        return ItemPage(items=items, next_page_token=next_token)

    async def get_thread_replies(
        self,
        channel_id: str,
        thread_position: str,
        page_token: Optional[str] = None,
        limit: int = 1000,
    ) -> ItemPage:
        try:
            data = await self._client.call(
                "conversations.replies",
                channel=channel_id,
                ts=thread_position,
                inclusive=True,
                limit=limit,
                cursor=page_token or None,
            )
        except SourceError as exc:
            if exc.code == "thread_not_found":
                raise ThreadNotFoundError(
                    f"Thread {thread_position} not found in channel {channel_id}",
                    code=exc.code,
                ) from exc
            _raise_for_channel(channel_id, exc)
            raise
        return self._page(channel_id, data)

    async def get_author(self, author_id: str) -> Optional[Author]:
        try:
            data = await self._client.call("users.info", user=author_id)
        except SourceError as exc:
            if exc.code in {"user_not_found", "user_not_visible"}:
                logger.warning("User %s not found", author_id)
                return None
            raise

        user = data.get("user") or {}
        profile = user.get("profile") or {}
        return Author(
            id=user.get("id", author_id),
            name=user.get("real_name") or user.get("name") or author_id,
            email=profile.get("email"),
            avatar=profile.get("image_72"),
            is_bot=bool(user.get("is_bot", False)),
            is_admin=bool(user.get("is_admin", False)),
        )

    async def get_channel_info(self, channel_id: str) -> ChannelMeta:
        try:
            data = await self._client.call("conversations.info", channel=channel_id)
        except SourceError as exc:
            _raise_for_channel(channel_id, exc)
            raise

        channel = data.get("channel") or {}
        return ChannelMeta(
            id=channel.get("id", channel_id),
            name=channel.get("name"),
            is_private=bool(channel.get("is_private", False)),
            topic=(channel.get("topic") or {}).get("value") or None,
            purpose=(channel.get("purpose") or {}).get("value") or None,
        )
