"""
Secrets and keychain integration: retrieves the Discord bot token (and any
other credential) from the system keychain.

Credentials are **never** stored in config files or source code.  They live
in the system keychain (``secret-tool`` / ``libsecret``) and are retrieved at
runtime; environment variables are accepted as a development fallback.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("mirror_common.secrets")

DEFAULT_SERVICE = "guild-mirror"


def _env_key(key_name: str) -> str:
    return f"GUILD_MIRROR_{key_name.upper().replace('-', '_')}"


def get_secret(key_name: str, service: str = DEFAULT_SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service guild-mirror key <key_name>

    Falls back to environment variables (``GUILD_MIRROR_<KEY_NAME>``) if
    ``secret-tool`` is not available or has no entry.

    Args:
        key_name: The key identifier (e.g. ``"discord-bot-token"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning(
            "secret-tool not found; falling back to environment variable"
        )
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )
