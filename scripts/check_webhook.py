#!/usr/bin/env python3
"""
check_webhook.py — send one test payload to the configured webhook.

Exits 0 if the endpoint answered with any 2xx, 1 otherwise.  Uses the
same settings file and ``webhook-api-key`` secret as the service.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from shared.secrets import get_optional_secret  # noqa: E402
from syncer.config import DEFAULT_CONFIG_PATH, SyncSettings, load_config  # noqa: E402
from syncer.delivery import WebhookDeliveryClient  # noqa: E402
from syncer.errors import ConfigError  # noqa: E402


async def check(config_path: Path) -> int:
    try:
        settings = SyncSettings.from_config(load_config(config_path))
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return 2

    async with WebhookDeliveryClient(
        settings.webhook_url,
        api_key=get_optional_secret("webhook-api-key"),
        timeout=settings.delivery_timeout_seconds,
    ) as client:
        ok = await client.test_connection()
    print(f"{settings.webhook_url}: {'OK' if ok else 'FAILED'}")
    return 0 if ok else 1


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(name)s: %(message)s")
    sys.exit(asyncio.run(check(args.config)))


if __name__ == "__main__":
    main()
