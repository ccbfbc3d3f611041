"""
Credential lookup — the Slack bot token, the webhook API key and the
database password are read from the system keychain at runtime.

They are never stored in ``settings.toml``.  ``secret-tool`` (libsecret)
is tried first; environment variables named ``SLACK_RELAY_<KEY>`` are a
fallback for development machines and containers.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Optional

logger = logging.getLogger("shared.secrets")

SERVICE_NAME = "slack-relay"


def _env_key(key_name: str) -> str:
    return f"SLACK_RELAY_{key_name.upper().replace('-', '_')}"


def _keychain_lookup(key_name: str, service: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        logger.debug("secret-tool not installed")
        return None
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out looking up '%s'", key_name)
        return None
    except OSError:
        logger.warning("secret-tool failed for '%s'", key_name, exc_info=True)
        return None
    return result.stdout.strip() or None


def get_optional_secret(key_name: str, service: str = SERVICE_NAME) -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when the secret is absent."""
    secret = _keychain_lookup(key_name, service)
    if secret:
        return secret

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.info("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val
    return None


def get_secret(key_name: str, service: str = SERVICE_NAME) -> str:
    """Retrieve a required secret.

    Looks up ``secret-tool lookup service <service> key <key_name>``, then
    the ``SLACK_RELAY_<KEY_NAME>`` environment variable.

    Args:
        key_name: Key identifier, e.g. ``"slack-bot-token"``.
        service: Keychain service label.

    Raises:
        RuntimeError: If the secret is found in neither place.
    """
    secret = get_optional_secret(key_name, service)
    if secret is None:
        raise RuntimeError(
            f"Secret '{key_name}' not found in keychain (service={service}) "
            f"or environment variable {_env_key(key_name)}"
        )
    return secret
