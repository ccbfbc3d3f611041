"""
Per-channel cursor persistence.

The store keeps a ``{channel_id: cursor}`` snapshot, loads it lazily once
per process and flushes the *whole* snapshot after every accepted
mutation.  Cursors only ever move forward: a ``set`` with a value that is
not numerically greater than the stored one is a silent no-op, which makes
replays and out-of-order commits harmless.

Stale cursors (older than ``max_age_hours``) are ignored in favour of a
bounded lookback window so a long outage never triggers an unbounded
backfill.

Backends:
    - ``JsonFileCursorBackend``: a JSON file, replaced atomically.
    - ``PostgresCursorBackend``: one JSONB snapshot row via ``asyncpg``.

Single-process only: concurrent processes sharing one snapshot would
overwrite each other's progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import asyncpg

from syncer.models import format_cursor, parse_cursor

logger = logging.getLogger("syncer.cursor_store")

DEFAULT_LOOKBACK_MINUTES = 1440
MAX_CURSOR_AGE_HOURS = 48.0


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class CursorBackend(ABC):
    """Durable storage for the cursor snapshot."""

    @abstractmethod
    async def load(self) -> Dict[str, str]:
        """Return the persisted snapshot (empty if none exists).

        Raises:
            ValueError: If the snapshot exists but cannot be decoded.
            Exception: Storage failures (``OSError``, database errors)
                propagate unchanged.
        """
        ...

    @abstractmethod
    async def save(self, state: Mapping[str, str]) -> None:
        """Persist the full snapshot.  Failures must propagate."""
        ...


def _validate_snapshot(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict):
        raise ValueError(f"cursor snapshot must be a JSON object, got {type(data).__name__}")
    return {str(k): str(v) for k, v in data.items()}


class JsonFileCursorBackend(CursorBackend):
    """Snapshot stored as a flat JSON object in a local file.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a crash mid-write never leaves a truncated snapshot.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Dict[str, str]:
        if not self._path.exists():
            logger.info("No cursor snapshot at %s, starting empty", self._path)
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"corrupt cursor snapshot {self._path}: {exc}") from exc
        return _validate_snapshot(data)

    async def save(self, state: Mapping[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(dict(state), handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug("Cursor snapshot saved to %s", self._path)


_LOAD_SNAPSHOT_SQL = "SELECT state FROM sync_cursors WHERE name = $1"
_SAVE_SNAPSHOT_SQL = """
    INSERT INTO sync_cursors (name, state, updated_at)
    VALUES ($1, $2::jsonb, NOW())
    ON CONFLICT (name)
    DO UPDATE SET state = EXCLUDED.state, updated_at = NOW()
"""


class PostgresCursorBackend(CursorBackend):
    """Snapshot stored as a single JSONB row in ``sync_cursors``.

    Args:
        pool: ``asyncpg`` pool (see :func:`shared.db.get_connection_pool`).
        name: Row key, so several deployments can share one table.
    """

    def __init__(self, pool: asyncpg.Pool, name: str = "default") -> None:
        self._pool = pool
        self._name = name

    async def load(self) -> Dict[str, str]:
        raw = await self._pool.fetchval(_LOAD_SNAPSHOT_SQL, self._name)
        if raw is None:
            return {}
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ValueError(f"corrupt cursor snapshot row {self._name!r}: {exc}") from exc
        return _validate_snapshot(raw)

    async def save(self, state: Mapping[str, str]) -> None:
        await self._pool.execute(_SAVE_SNAPSHOT_SQL, self._name, json.dumps(dict(state)))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CursorStore:
    """Owns the cursor snapshot; every read and write goes through here.

    Args:
        backend: Durable snapshot storage.
        lookback_minutes: Window used when no usable cursor exists.
        max_age_hours: Stored cursors older than this are treated as stale.
        clock: Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        backend: CursorBackend,
        lookback_minutes: float = DEFAULT_LOOKBACK_MINUTES,
        max_age_hours: float = MAX_CURSOR_AGE_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._lookback_minutes = lookback_minutes
        self._max_age_hours = max_age_hours
        self._clock = clock
        self._state: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, str]:
        """Load the snapshot once.

        A corrupt snapshot (``ValueError``) starts the store empty.  Any other
        failure (I/O, database connection) propagates and nothing is cached,
        so the next call retries and a partial snapshot is never flushed over
        the durable one.
        """
        if self._state is not None:
            return self._state
        try:
            state = await self._backend.load()
        except ValueError:
            logger.warning("Corrupt cursor state, resetting to empty", exc_info=True)
            state = {}
        else:
            logger.info("Cursor state loaded (%d channels)", len(state))
        self._state = state
        return self._state

    def _fallback_cursor(self) -> str:
        return format_cursor(self._clock() - self._lookback_minutes * 60)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, channel_id: str) -> str:
        """Return the cursor to fetch from for *channel_id*.

        Falls back to ``now - lookback`` when nothing is stored, the stored
        value is unreadable, or it is older than ``max_age_hours``.

        Raises:
            Whatever the backend raises on load, other than ``ValueError``.
        """
        async with self._lock:
            state = await self._load()
            stored = state.get(channel_id)

        if stored is not None:
            number = parse_cursor(stored)
            if number is None:
                logger.warning(
                    "Ignoring unreadable cursor %r for %s", stored, channel_id
                )
            else:
                age_hours = (self._clock() - float(number)) / 3600
                if age_hours <= self._max_age_hours:
                    logger.debug(
                        "Cursor for %s: %s (%.1fh old)", channel_id, stored, age_hours
                    )
                    return stored
                logger.warning(
                    "Stored cursor for %s is %.1fh old (max %sh), using %smin lookback",
                    channel_id,
                    age_hours,
                    self._max_age_hours,
                    self._lookback_minutes,
                )
                return self._fallback_cursor()

        fallback = self._fallback_cursor()
        logger.info(
            "No cursor for %s, using %smin lookback: %s",
            channel_id,
            self._lookback_minutes,
            fallback,
        )
        return fallback

    async def get_state(self) -> Dict[str, str]:
        async with self._lock:
            return dict(await self._load())

    async def get_stats(self) -> Dict[str, Any]:
        state = await self.get_state()
        numbers = [n for n in (parse_cursor(v) for v in state.values()) if n is not None]
        return {
            "tracked_channels": len(state),
            "channels": sorted(state),
            "oldest_cursor": format_cursor(float(min(numbers))) if numbers else None,
            "newest_cursor": format_cursor(float(max(numbers))) if numbers else None,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _accepts(current: Optional[str], candidate: str) -> bool:
        new_value = parse_cursor(candidate)
        if new_value is None:
            return False
        old_value = parse_cursor(current)
        return old_value is None or new_value > old_value

    async def set(self, channel_id: str, cursor: str) -> bool:
        """Advance *channel_id* to *cursor* if it is strictly newer.

        Returns:
            ``True`` if the snapshot changed and was flushed.

        Raises:
            Whatever the backend raises on save; the in-memory value is
            rolled back so a failed persist is never reported as progress.
        """
        async with self._lock:
            state = await self._load()
            current = state.get(channel_id)
            if not self._accepts(current, cursor):
                logger.debug(
                    "Cursor %s for %s is not newer than %s, skipping",
                    cursor,
                    channel_id,
                    current,
                )
                return False

            state[channel_id] = cursor
            try:
                await self._backend.save(state)
            except Exception:
                self._restore(state, channel_id, current)
                raise
            logger.info("Cursor for %s advanced to %s", channel_id, cursor)
            return True

    async def batch_set(self, updates: Mapping[str, str]) -> int:
        """Apply :meth:`set` semantics to each entry, then flush once.

        Returns:
            Number of channels whose cursor advanced.
        """
        async with self._lock:
            state = await self._load()
            previous: Dict[str, Optional[str]] = {}
            for channel_id, cursor in updates.items():
                current = state.get(channel_id)
                if self._accepts(current, cursor):
                    previous[channel_id] = current
                    state[channel_id] = cursor

            if not previous:
                logger.debug("No cursors needed updating in batch")
                return 0

            try:
                await self._backend.save(state)
            except Exception:
                for channel_id, current in previous.items():
                    self._restore(state, channel_id, current)
                raise
            logger.info("Batch advanced %d channel cursors", len(previous))
            return len(previous)

    async def reset_channel(self, channel_id: str) -> bool:
        """Forget *channel_id*; its next ``get`` uses the lookback window."""
        async with self._lock:
            state = await self._load()
            if channel_id not in state:
                return False
            current = state.pop(channel_id)
            try:
                await self._backend.save(state)
            except Exception:
                state[channel_id] = current
                raise
            logger.info("Reset cursor for %s", channel_id)
            return True

    async def reset_all(self) -> None:
        async with self._lock:
            await self._backend.save({})
            self._state = {}
        logger.warning("Reset all cursors; next cycle reprocesses the lookback window")

    @staticmethod
    def _restore(state: Dict[str, str], channel_id: str, previous: Optional[str]) -> None:
        if previous is None:
            state.pop(channel_id, None)
        else:
            state[channel_id] = previous
