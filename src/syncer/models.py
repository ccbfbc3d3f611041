"""
Data model shared by every pipeline stage.

Upstream message shapes vary (user vs. bot authors, thread replies,
reactions, files), so ``RawItem`` is an optional-field record with explicit
presence checks instead of a raw dict that callers inspect ad hoc.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = "1.0.0"
SOURCE_NAME = "slack"
UNKNOWN_AUTHOR_NAME = "Unknown User"
DEFAULT_THREAD_EMOJI = "pushpin"


# ---------------------------------------------------------------------------
# Cursor helpers
# ---------------------------------------------------------------------------


def parse_cursor(value: Any) -> Optional[Decimal]:
    """Return the numeric value of a cursor string, or ``None`` if invalid."""
    if value is None:
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def format_cursor(seconds: float) -> str:
    """Render epoch seconds as a cursor with microsecond precision."""
    return f"{seconds:.6f}"


def cursor_to_datetime(cursor: str) -> Optional[datetime]:
    number = parse_cursor(cursor)
    if number is None:
        return None
    return datetime.fromtimestamp(float(number), tz=timezone.utc)


# ---------------------------------------------------------------------------
# Upstream records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RawItem:
    """One message as returned by the upstream source."""

    position: str
    channel_id: str
    text: Optional[str] = None
    user_id: Optional[str] = None
    bot_id: Optional[str] = None
    username: Optional[str] = None
    subtype: Optional[str] = None
    thread_position: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    files: List[Dict[str, Any]] = field(default_factory=list)
    reactions: List[Dict[str, Any]] = field(default_factory=list)
    bot_avatar: Optional[str] = None

    @classmethod
    def from_slack(cls, channel_id: str, message: Dict[str, Any]) -> "RawItem":
        """Build from a ``conversations.history`` message object."""
        icons = message.get("icons") or {}
        return cls(
            position=str(message["ts"]),
            channel_id=channel_id,
            text=message.get("text") or None,
            user_id=message.get("user"),
            bot_id=message.get("bot_id"),
            username=message.get("username"),
            subtype=message.get("subtype"),
            thread_position=message.get("thread_ts"),
            attachments=list(message.get("attachments") or []),
            files=list(message.get("files") or []),
            reactions=list(message.get("reactions") or []),
            bot_avatar=icons.get("image_72"),
        )

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.attachments or self.files)

    @property
    def is_reply(self) -> bool:
        return (
            self.thread_position is not None
            and self.thread_position != self.position
        )

    @property
    def sort_key(self) -> Decimal:
        number = parse_cursor(self.position)
        return number if number is not None else Decimal(0)


@dataclass(frozen=True, slots=True)
class Author:
    id: Optional[str]
    name: str
    email: Optional[str] = None
    avatar: Optional[str] = None
    is_bot: bool = False
    is_admin: bool = False

    @classmethod
    def placeholder(cls) -> "Author":
        """Sentinel used when the author cannot be resolved."""
        return cls(id=None, name=UNKNOWN_AUTHOR_NAME)

    @classmethod
    def for_bot(cls, item: RawItem) -> "Author":
        return cls(
            id=item.bot_id,
            name=item.username or "Bot",
            avatar=item.bot_avatar,
            is_bot=True,
        )

    @property
    def is_placeholder(self) -> bool:
        return self.id is None and self.name == UNKNOWN_AUTHOR_NAME

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "avatar": self.avatar,
            "isBot": self.is_bot,
            "isAdmin": self.is_admin,
        }


@dataclass(frozen=True, slots=True)
class ChannelMeta:
    id: str
    name: Optional[str] = None
    is_private: bool = False
    topic: Optional[str] = None
    purpose: Optional[str] = None

    @classmethod
    def placeholder(cls, channel_id: str) -> "ChannelMeta":
        return cls(id=channel_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "isPrivate": self.is_private,
            "topic": self.topic,
            "purpose": self.purpose,
        }


@dataclass(slots=True)
class ItemPage:
    """One page of upstream results (newest-first)."""

    items: List[RawItem]
    next_page_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class EnrichedItem:
    item: RawItem
    channel: ChannelMeta
    author: Optional[Author]

    @property
    def position(self) -> str:
        return self.item.position

    def message_dict(self) -> Dict[str, Any]:
        item = self.item
        message: Dict[str, Any] = {
            "timestamp": item.position,
            "text": item.text or "",
            "type": item.subtype or "message",
            "attachments": item.attachments,
            "files": item.files,
            "user": self.author.to_dict() if self.author is not None else None,
            "isReply": item.is_reply,
        }
        if item.is_reply:
            message["parentTimestamp"] = item.thread_position
        if item.reactions:
            message["reactions"] = [
                {
                    "name": reaction.get("name"),
                    "count": reaction.get("count"),
                    "users": reaction.get("users", []),
                }
                for reaction in item.reactions
            ]
        return message


@dataclass(slots=True)
class Envelope:
    """Delivery-ready wrapper around an enriched item."""

    enriched: EnrichedItem
    polled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: str = SCHEMA_VERSION

    @property
    def position(self) -> str:
        return self.enriched.position

    @property
    def channel_id(self) -> str:
        return self.enriched.channel.id

    def to_payload(self) -> Dict[str, Any]:
        return {
            "source": SOURCE_NAME,
            "channel": self.enriched.channel.to_dict(),
            "message": self.enriched.message_dict(),
            "metadata": {
                "polledAt": self.polled_at.isoformat(),
                "integrationVersion": self.schema_version,
            },
        }


@dataclass(slots=True)
class ThreadEnvelope:
    """A whole thread delivered as one payload (on-demand forwarding)."""

    thread_position: str
    channel: ChannelMeta
    messages: List[EnrichedItem]
    emoji: str = DEFAULT_THREAD_EMOJI
    flagged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: str = SCHEMA_VERSION

    def thread_dict(self) -> Dict[str, Any]:
        first = self.messages[0].position if self.messages else None
        last = self.messages[-1].position if self.messages else None
        start, end = parse_cursor(first), parse_cursor(last)
        duration = float(end - start) if start is not None and end is not None else 0.0
        return {
            "id": self.thread_position,
            "messageCount": len(self.messages),
            "firstMessage": first,
            "lastMessage": last,
            "durationSeconds": duration,
        }

    def to_payload(self) -> Dict[str, Any]:
        return {
            "source": SOURCE_NAME,
            "channel": self.channel.to_dict(),
            "thread": self.thread_dict(),
            "messages": [enriched.message_dict() for enriched in self.messages],
            "metadata": {
                "flaggedAt": self.flagged_at.isoformat(),
                "emoji": self.emoji,
                "integrationVersion": self.schema_version,
            },
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ChannelState(str, enum.Enum):
    """Per-channel lifecycle within one cycle."""

    IDLE = "idle"
    CURSOR_READ = "cursor_read"
    FETCHING = "fetching"
    ENRICHING = "enriching"
    DELIVERING = "delivering"
    CURSOR_COMMIT = "cursor_commit"
    DONE = "done"
    ERRORED = "errored"


@dataclass(frozen=True, slots=True)
class SyncError:
    channel_id: str
    stage: str
    message: str
    position: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "channelId": self.channel_id,
            "stage": self.stage,
            "error": self.message,
        }
        if self.position is not None:
            data["messageTimestamp"] = self.position
        return data


@dataclass(slots=True)
class ChannelResult:
    channel_id: str
    state: ChannelState = ChannelState.IDLE
    since: Optional[str] = None
    fetched: int = 0
    delivered: int = 0
    failed: int = 0
    committed_cursor: Optional[str] = None
    errors: List[SyncError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is ChannelState.DONE and not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "since": self.since,
            "messageCount": self.fetched,
            "delivered": self.delivered,
            "failed": self.failed,
            "committedCursor": self.committed_cursor,
            "success": self.success,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass(slots=True)
class SyncResult:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    channels: Dict[str, ChannelResult] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def add(self, result: ChannelResult) -> None:
        self.channels[result.channel_id] = result

    @property
    def total_fetched(self) -> int:
        return sum(r.fetched for r in self.channels.values())

    @property
    def total_delivered(self) -> int:
        return sum(r.delivered for r in self.channels.values())

    @property
    def errors(self) -> List[SyncError]:
        return [e for r in self.channels.values() for e in r.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "channelsPolled": len(self.channels),
                "totalMessages": self.total_fetched,
                "messagesSent": self.total_delivered,
                "errors": len(self.errors),
            },
            "channels": {cid: r.to_dict() for cid, r in self.channels.items()},
            "errors": [e.to_dict() for e in self.errors],
            "startedAt": self.started_at.isoformat(),
            "duration": round(self.duration_seconds, 3),
        }
