"""
Database helpers — connection pool, schema and health check.

PostgreSQL is optional for the relay.  When configured it stores the
cursor snapshot (``sync_cursors``) and mirrors the audit trail
(``audit_log``).  Uses ``asyncpg``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS sync_cursors (
        name       TEXT PRIMARY KEY,
        state      JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log (timestamp);",
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(
    config: Dict[str, Any], password: Optional[str] = None
) -> asyncpg.Pool:
    """Create an ``asyncpg`` pool from the ``[database]`` section.

    Args:
        config: Keys ``host``, ``port``, ``database``, ``user`` and
                optionally ``min_size``/``max_size``.
        password: Database password; omit for peer/socket auth.

    Raises:
        KeyError: ``database`` or ``user`` is missing.
        asyncpg.PostgresError: The connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=int(config.get("port", 5432)),
        database=config["database"],
        user=config["user"],
        password=password,
        min_size=int(config.get("min_size", 1)),
        max_size=int(config.get("max_size", 4)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config["user"],
        config.get("host") or "localhost",
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create ``sync_cursors`` and ``audit_log`` if missing.  Idempotent."""
    async with pool.acquire() as conn:
        for statement in _SCHEMA_SQL:
            await conn.execute(statement)
    logger.info("Database schema ready")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """``True`` if ``SELECT 1`` succeeds."""
    try:
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1;") == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
