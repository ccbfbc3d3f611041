"""
Relay entry point — polls Slack channels (read-only) and forwards every
new message to the configured webhook.

Runs as a long-lived systemd service, once with ``--once``, or forwards a
single thread with ``--thread CHANNEL TS``.

Key behaviours:
    - Loads settings from ``/etc/slack-relay/settings.toml``
      (``--config`` or ``SLACK_RELAY_CONFIG`` override).
    - All Slack access goes through ``ReadOnlySlackClient``.
    - One cycle per ``sync_interval_seconds``; cycles never overlap.
    - Handles SIGTERM / SIGINT for graceful shutdown between cycles.
    - Records every cycle in the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional, Tuple

from syncer.config import DEFAULT_CONFIG_PATH, SyncSettings, load_config
from syncer.cursor_store import (
    CursorBackend,
    CursorStore,
    JsonFileCursorBackend,
    PostgresCursorBackend,
)
from syncer.delivery import WebhookDeliveryClient
from syncer.enrichment import Enricher
from syncer.errors import ConfigError, DeliveryError, SourceError
from syncer.fetcher import PaginatedFetcher, RateLimitRetry
from syncer.orchestrator import SyncOrchestrator
from syncer.readonly_client import ReadOnlySlackClient
from syncer.source import SlackMessageSource
from syncer.threads import ThreadForwarder
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_optional_secret, get_secret

logger = logging.getLogger("syncer.main")


# ---------------------------------------------------------------------------
# Settings & wiring
# ---------------------------------------------------------------------------


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> SyncSettings:
    """Load the TOML file and validate it.

    Raises:
        ConfigError: The file is missing, invalid, or incomplete.
    """
    settings = SyncSettings.from_config(load_config(path))
    logger.info(
        "Loaded settings from %s: %d channels, interval %.0fs, %s cursor backend",
        path,
        len(settings.channels),
        settings.sync_interval_seconds,
        settings.state_backend,
    )
    return settings


def load_bot_token() -> str:
    try:
        return get_secret("slack-bot-token")
    except RuntimeError as exc:
        raise ConfigError(str(exc)) from exc


def build_store(settings: SyncSettings, pool: Any = None) -> CursorStore:
    backend: CursorBackend
    if settings.state_backend == "postgres":
        if pool is None:
            raise ConfigError("postgres cursor backend requires a database pool")
        backend = PostgresCursorBackend(pool)
    else:
        backend = JsonFileCursorBackend(settings.state_path)
    return CursorStore(
        backend,
        lookback_minutes=settings.lookback_minutes,
        max_age_hours=settings.max_cursor_age_hours,
    )


def build_fetcher(settings: SyncSettings, source: SlackMessageSource) -> PaginatedFetcher:
    return PaginatedFetcher(
        source,
        page_size=settings.page_size,
        max_pages=settings.max_pages,
        retry=RateLimitRetry(
            attempts=settings.rate_limit_attempts,
            base_delay=settings.rate_limit_base_delay,
        ),
    )


def build_orchestrator(
    settings: SyncSettings,
    store: CursorStore,
    source: SlackMessageSource,
    delivery: WebhookDeliveryClient,
    audit: Optional[AuditLogger] = None,
) -> SyncOrchestrator:
    enricher = Enricher(source, include_user_emails=settings.include_user_emails)
    return SyncOrchestrator(
        store,
        build_fetcher(settings, source),
        enricher,
        delivery,
        batch_size=settings.batch_size,
        batch_delay=settings.batch_delay_seconds,
        audit=audit,
    )


def build_thread_forwarder(
    settings: SyncSettings,
    source: SlackMessageSource,
    delivery: WebhookDeliveryClient,
    audit: Optional[AuditLogger] = None,
) -> ThreadForwarder:
    return ThreadForwarder(
        build_fetcher(settings, source),
        Enricher(source, include_user_emails=settings.include_user_emails),
        delivery,
        emoji=settings.thread_emoji,
        audit=audit,
    )


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    remaining = max(0.0, seconds)
    while remaining > 0:
        if _shutdown_event.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    logger.info("Received signal %s, shutting down after the current cycle...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def run_loop(
    orchestrator: SyncOrchestrator,
    channels: List[str],
    interval: float,
    once: bool = False,
) -> int:
    """Run cycles until shutdown.  Returns the number of cycles run."""
    cycle_number = 0
    while not _shutdown_event.is_set():
        cycle_number += 1
        try:
            result = await orchestrator.run_cycle(channels)
            logger.info(
                "Cycle #%d: %d/%d messages sent, %d errors in %.1fs",
                cycle_number,
                result.total_delivered,
                result.total_fetched,
                len(result.errors),
                result.duration_seconds,
            )
        except Exception:
            # Only programming errors get here.
            logger.exception("Cycle #%d aborted", cycle_number)
        if once:
            break
        await _sleep_with_shutdown(interval)
    return cycle_number


async def forward_thread(forwarder: ThreadForwarder, channel_id: str, thread_position: str) -> int:
    """Forward one thread.  Returns a process exit code."""
    try:
        await forwarder.forward(channel_id, thread_position)
    except (SourceError, DeliveryError) as exc:
        logger.error("Thread %s/%s not forwarded: %s", channel_id, thread_position, exc)
        return 1
    return 0


async def main(
    config_path: Path = DEFAULT_CONFIG_PATH,
    once: bool = False,
    thread: Optional[Tuple[str, str]] = None,
) -> int:
    """Top-level async entry point.  Returns a process exit code.

    With *thread* set to ``(channel_id, thread_position)`` the relay forwards
    that single thread and exits instead of running sync cycles.
    """
    try:
        settings = load_settings(config_path)
        token = load_bot_token()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    logging.getLogger().setLevel(settings.log_level)

    pool = None
    audit: Optional[AuditLogger] = None
    try:
        if settings.database is not None:
            pool = await get_connection_pool(
                settings.database, password=get_optional_secret("database-password")
            )
            await init_database(pool)
            if not await health_check(pool):
                logger.error("Database health check failed; not starting")
                return 1
        audit = AuditLogger(settings.audit_log_path, pool=pool)
        store = build_store(settings, pool)

        async with ReadOnlySlackClient(token) as client, WebhookDeliveryClient(
            settings.webhook_url,
            api_key=get_optional_secret("webhook-api-key"),
            timeout=settings.delivery_timeout_seconds,
            max_attempts=settings.delivery_max_attempts,
            backoff_base=settings.delivery_backoff_base,
        ) as delivery:
            try:
                identity = await client.call("auth.test")
            except SourceError as exc:
                logger.error("Slack authentication failed: %s", exc)
                await audit.log("syncer", "startup", {"error": str(exc)}, success=False)
                return 1
            logger.info(
                "Authenticated to Slack as %s (team %s)",
                identity.get("user"),
                identity.get("team"),
            )
            await audit.log(
                "syncer",
                "startup",
                {"user_id": identity.get("user_id"), "channels": settings.channels},
                success=True,
            )

            source = SlackMessageSource(client)
            if thread is not None:
                forwarder = build_thread_forwarder(settings, source, delivery, audit)
                return await forward_thread(forwarder, *thread)

            orchestrator = build_orchestrator(settings, store, source, delivery, audit)
            await run_loop(
                orchestrator,
                settings.channels,
                settings.sync_interval_seconds,
                once=once,
            )
        return 0
    finally:
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Relay shut down cleanly.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="slack-relay", description="Relay Slack channel messages to a webhook."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    mode.add_argument(
        "--thread",
        nargs=2,
        metavar=("CHANNEL", "TS"),
        help="Forward one thread as a single payload and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Settings file (default: {DEFAULT_CONFIG_PATH})",
    )
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    thread = tuple(args.thread) if args.thread else None
    sys.exit(asyncio.run(main(args.config, once=args.once, thread=thread)))


if __name__ == "__main__":
    run()
