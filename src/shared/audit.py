"""
Audit trail for relay cycles — one JSON object per line in a local file,
optionally mirrored into a PostgreSQL ``audit_log`` table.

Events are queued and written by a background task so the sync loop
never blocks on disk or database I/O.  Typical actions:
``startup``, ``sync_cycle_start``, ``sync_channel``, ``sync_cycle``,
``thread_forward``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/slack-relay/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class _AuditEvent:
    line: str
    service: str
    action: str
    details_json: str
    success: bool


class AuditLogger:
    """Queued audit writer.

    Args:
        log_path: JSON Lines file; always written.
        pool: Optional ``asyncpg`` pool.  When given, events are also
            inserted into ``audit_log``.
        queue_size: Max queued events before ``log`` waits.
        flush_batch_size: Events written per flush.
    """

    def __init__(
        self,
        log_path: Path = _DEFAULT_LOG_PATH,
        pool: Optional[asyncpg.Pool] = None,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._log_path = Path(log_path)
        self._pool = pool
        self._queue: asyncio.Queue[Optional[_AuditEvent]] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._lifecycle_lock = asyncio.Lock()

    @property
    def log_path(self) -> Path:
        return self._log_path

    def _start_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._drain(), name="slack-relay-audit-writer"
            )

    async def _write(self, events: List[_AuditEvent]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(event.line for event in events))
        except OSError:
            logger.exception("Failed to append to audit file %s", self._log_path)

        if self._pool is None:
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [(e.service, e.action, e.details_json, e.success) for e in events],
                )
        except Exception:
            logger.exception("Failed to mirror %d audit events to database", len(events))

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                self._queue.task_done()
                return

            events = [event]
            stop = False
            while len(events) < self._flush_batch_size:
                try:
                    extra = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if extra is None:
                    self._queue.task_done()
                    stop = True
                    break
                events.append(extra)

            await self._write(events)
            for _ in events:
                self._queue.task_done()
            if stop:
                return

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue one audit event.

        Args:
            service: Originating component (``"syncer"``).
            action: Event name, e.g. ``"sync_channel"``.
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        payload = details or {}
        line = json.dumps(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "service": service,
                "action": action,
                "details": payload,
                "success": success,
            },
            default=str,
        )
        event = _AuditEvent(
            line=line + "\n",
            service=service,
            action=action,
            details_json=json.dumps(payload, default=str),
            success=success,
        )
        async with self._lifecycle_lock:
            if self._closed:
                logger.debug("Audit logger closed; dropping %s/%s", service, action)
                return
            self._start_worker()
            await self._queue.put(event)

    async def flush(self) -> None:
        """Wait until every queued event has been written."""
        if self._worker_task is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Flush pending events and stop the writer task."""
        async with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker_task
        if worker is not None:
            await self._queue.put(None)
            await worker
