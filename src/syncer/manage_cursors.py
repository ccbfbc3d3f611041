"""
Cursor state manager — inspect and repair the relay's per-channel cursors.

Runnable as::

    python -m syncer.manage_cursors show
    python -m syncer.manage_cursors stats
    python -m syncer.manage_cursors reset C0123
    python -m syncer.manage_cursors reset-all [--yes]
    python -m syncer.manage_cursors import cursors.json

Uses the same settings file and cursor backend as the service.  Stop the
service before resetting; a running cycle would overwrite the change.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from syncer.config import DEFAULT_CONFIG_PATH, SyncSettings, load_config
from syncer.cursor_store import CursorStore
from syncer.errors import ConfigError
from syncer.main import build_store
from syncer.models import cursor_to_datetime, parse_cursor
from shared.db import get_connection_pool, init_database
from shared.secrets import get_optional_secret

logger = logging.getLogger("syncer.manage_cursors")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _describe(cursor: str) -> str:
    moment = cursor_to_datetime(cursor)
    if moment is None:
        return f"{cursor}  (unreadable)"
    return f"{cursor}  ({moment.astimezone(timezone.utc):%Y-%m-%d %H:%M:%S} UTC)"


def read_import_file(path: Path) -> Dict[str, str]:
    """Read ``{channel: cursor}`` from a JSON file, dropping bad entries.

    Raises:
        ValueError: The file is not a JSON object.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object of channel -> cursor")
    updates: Dict[str, str] = {}
    for channel_id, cursor in data.items():
        text = str(cursor)
        if parse_cursor(text) is None:
            print(f"Skipping {channel_id}: unreadable cursor {cursor!r}")
            continue
        updates[str(channel_id)] = text
    return updates


def _confirm(message: str) -> bool:
    try:
        from InquirerPy import inquirer
    except ImportError:
        print("Error: InquirerPy is required to confirm. Install it or pass --yes.")
        return False
    return bool(inquirer.confirm(message=message, default=False).execute())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_show(store: CursorStore) -> int:
    state = await store.get_state()
    if not state:
        print("No cursors stored.")
        return 0
    for channel_id in sorted(state):
        print(f"{channel_id:<14} {_describe(state[channel_id])}")
    return 0


async def cmd_stats(store: CursorStore) -> int:
    stats = await store.get_stats()
    print(f"Tracked channels: {stats['tracked_channels']}")
    if stats["oldest_cursor"] is not None:
        print(f"Oldest cursor:    {_describe(stats['oldest_cursor'])}")
        print(f"Newest cursor:    {_describe(stats['newest_cursor'])}")
    return 0


async def cmd_reset(store: CursorStore, channel_id: str) -> int:
    if await store.reset_channel(channel_id):
        print(f"Reset {channel_id}; it will be re-read from the lookback window.")
        return 0
    print(f"No cursor stored for {channel_id}.")
    return 1


async def cmd_reset_all(store: CursorStore, assume_yes: bool = False) -> int:
    state = await store.get_state()
    if not state:
        print("No cursors stored.")
        return 0
    if not assume_yes and not _confirm(f"Reset cursors for {len(state)} channel(s)?"):
        print("Aborted.")
        return 1
    await store.reset_all()
    print(f"Reset {len(state)} channel cursor(s).")
    return 0


async def cmd_import(store: CursorStore, path: Path) -> int:
    try:
        updates = read_import_file(path)
    except (OSError, ValueError) as exc:
        print(f"Error: cannot import {path}: {exc}")
        return 1
    applied = await store.batch_set(updates)
    print(f"Applied {applied} of {len(updates)} cursor(s); older values were kept.")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _open_store(settings: SyncSettings) -> tuple[CursorStore, Any]:
    pool = None
    if settings.state_backend == "postgres" and settings.database is not None:
        pool = await get_connection_pool(
            settings.database, password=get_optional_secret("database-password")
        )
        await init_database(pool)
    return build_store(settings, pool), pool


async def dispatch(args: argparse.Namespace, store: CursorStore) -> int:
    if args.command == "show":
        return await cmd_show(store)
    if args.command == "stats":
        return await cmd_stats(store)
    if args.command == "reset":
        return await cmd_reset(store, args.channel)
    if args.command == "reset-all":
        return await cmd_reset_all(store, assume_yes=args.yes)
    if args.command == "import":
        return await cmd_import(store, args.file)
    raise ValueError(f"unknown command {args.command!r}")


async def async_main(args: argparse.Namespace) -> int:
    try:
        settings = SyncSettings.from_config(load_config(args.config))
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return 2

    store, pool = await _open_store(settings)
    try:
        return await dispatch(args, store)
    finally:
        if pool is not None:
            await pool.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manage-cursors", description="Inspect or reset relay cursors."
    )
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="List every channel cursor")
    sub.add_parser("stats", help="Summary of stored cursors")
    reset = sub.add_parser("reset", help="Forget one channel's cursor")
    reset.add_argument("channel")
    reset_all = sub.add_parser("reset-all", help="Forget every cursor")
    reset_all.add_argument("--yes", action="store_true", help="Skip confirmation")
    imp = sub.add_parser("import", help="Merge cursors from a JSON file")
    imp.add_argument("file", type=Path)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Synchronous entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    sys.exit(asyncio.run(async_main(args)))


if __name__ == "__main__":
    main()
