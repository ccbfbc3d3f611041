"""
Settings loading and validation.

Configuration lives in a TOML file (``/etc/slack-relay/settings.toml`` by
default, overridable with ``SLACK_RELAY_CONFIG``).  Credentials never do:
they come from :mod:`shared.secrets`.

Validation is fail-fast: a missing webhook URL, a malformed URL or an
empty channel list raises ``ConfigError`` before any cycle runs.  Numeric
options that cannot be parsed fall back to their defaults with a warning.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import toml

from syncer.errors import ConfigError
from syncer.models import DEFAULT_THREAD_EMOJI

logger = logging.getLogger("syncer.config")

DEFAULT_CONFIG_PATH = Path(
    os.environ.get("SLACK_RELAY_CONFIG", "/etc/slack-relay/settings.toml")
)
_DEFAULT_STATE_PATH = Path("/var/lib/slack-relay/state.json")
_DEFAULT_AUDIT_PATH = Path("/var/log/slack-relay/audit.log")
_VALID_BACKENDS = {"file", "postgres"}
_CHANNEL_PREFIXES = ("C", "G", "D")


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load settings from a TOML file.

    Raises:
        ConfigError: If the file is missing or not valid TOML.
    """
    try:
        config = toml.load(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except toml.TomlDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    config["_meta_config_path"] = str(path)
    return config


def _as_float(section: Dict[str, Any], key: str, default: float, minimum: float = 0.0) -> float:
    value = section.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %s", key, value, default)
        return default
    return max(minimum, number)


def _as_int(section: Dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = section.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %s", key, value, default)
        return default
    return max(minimum, number)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def parse_channels(value: Any) -> List[str]:
    """Normalize ``syncer.channels`` (list or comma-separated string)."""
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.split(",")
    elif isinstance(value, (list, tuple)):
        raw = [str(v) for v in value]
    else:
        raise ConfigError(
            f"syncer.channels must be a list or string, got {type(value).__name__}"
        )
    channels = [c.strip() for c in raw if c.strip()]
    return list(dict.fromkeys(channels))


def validate_webhook_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError(f"Malformed webhook URL: {url!r}")
    return url


@dataclass(frozen=True)
class SyncSettings:
    """Validated runtime settings."""

    channels: List[str]
    webhook_url: str
    sync_interval_seconds: float = 300.0
    lookback_minutes: float = 1440.0
    max_cursor_age_hours: float = 48.0
    page_size: int = 1000
    max_pages: int = 10
    rate_limit_attempts: int = 3
    rate_limit_base_delay: float = 2.0
    batch_size: int = 50
    batch_delay_seconds: float = 0.1
    include_user_emails: bool = False
    thread_emoji: str = DEFAULT_THREAD_EMOJI
    state_backend: str = "file"
    state_path: Path = _DEFAULT_STATE_PATH
    delivery_timeout_seconds: float = 30.0
    delivery_max_attempts: int = 3
    delivery_backoff_base: float = 2.0
    log_level: str = "INFO"
    audit_log_path: Path = _DEFAULT_AUDIT_PATH
    database: Optional[Dict[str, Any]] = field(default=None)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        """Build settings from a parsed TOML dict.

        Raises:
            ConfigError: Required settings are missing or malformed.
        """
        syncer = config.get("syncer", {})
        delivery = config.get("delivery", {})

        channels = parse_channels(syncer.get("channels"))
        if not channels:
            raise ConfigError("Missing required config key: syncer.channels")
        odd = [c for c in channels if not c.startswith(_CHANNEL_PREFIXES)]
        if odd:
            logger.warning(
                "Some channel IDs may be invalid: %s (expected C..., G... or D...)",
                ", ".join(odd),
            )

        webhook_url = delivery.get("webhook_url")
        if not webhook_url:
            raise ConfigError("Missing required config key: delivery.webhook_url")
        validate_webhook_url(str(webhook_url))

        backend = str(syncer.get("state_backend", "file")).lower()
        if backend not in _VALID_BACKENDS:
            raise ConfigError(
                f"syncer.state_backend must be one of {sorted(_VALID_BACKENDS)}, got {backend!r}"
            )
        database = config.get("database")
        if backend == "postgres" and not database:
            raise ConfigError("syncer.state_backend = 'postgres' requires a [database] section")

        level = str(config.get("logging", {}).get("level", "INFO")).upper()
        if not isinstance(logging.getLevelName(level), int):
            logger.warning("Unknown log level %r; using INFO", level)
            level = "INFO"

        return cls(
            channels=channels,
            webhook_url=str(webhook_url),
            sync_interval_seconds=_as_float(syncer, "sync_interval_seconds", 300.0),
            lookback_minutes=_as_float(syncer, "lookback_minutes", 1440.0),
            max_cursor_age_hours=_as_float(syncer, "max_cursor_age_hours", 48.0),
            page_size=_as_int(syncer, "page_size", 1000),
            max_pages=_as_int(syncer, "max_pages", 10),
            rate_limit_attempts=_as_int(syncer, "rate_limit_attempts", 3),
            rate_limit_base_delay=_as_float(syncer, "rate_limit_base_delay", 2.0),
            batch_size=_as_int(syncer, "batch_size", 50),
            batch_delay_seconds=_as_float(syncer, "batch_delay_seconds", 0.1),
            include_user_emails=_as_bool(syncer.get("include_user_emails", False)),
            thread_emoji=str(syncer.get("thread_emoji") or DEFAULT_THREAD_EMOJI),
            state_backend=backend,
            state_path=Path(syncer.get("state_path", _DEFAULT_STATE_PATH)),
            delivery_timeout_seconds=_as_float(delivery, "timeout_seconds", 30.0),
            delivery_max_attempts=_as_int(delivery, "max_attempts", 3),
            delivery_backoff_base=_as_float(delivery, "backoff_base", 2.0),
            log_level=level,
            audit_log_path=Path(config.get("audit", {}).get("log_path", _DEFAULT_AUDIT_PATH)),
            database=dict(database) if database else None,
        )
