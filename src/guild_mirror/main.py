"""
Mirror entry point: connects to Discord (read-only), mirrors the configured
guild into SQLite, then sleeps until the next pass.

Runs as a long-lived systemd service, or once with ``mirror.run_once``.

Key behaviours:
    - Loads configuration from ``/etc/guild-mirror/settings.toml``.
    - The bot token comes from the system keychain, never from config.
    - All Discord access goes through ``DiscordRestApi`` (GET allowlist).
    - A store created for another guild or schema version aborts startup.
    - Handles SIGTERM / SIGINT for graceful shutdown between passes.
    - Logs every pass to the audit log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any, Dict

import toml

from guild_mirror.engine import GuildNotFoundError, Mirror
from guild_mirror.mirror_store import MirrorStore
from guild_mirror.progress import LoggingTaskReporter
from guild_mirror.remote_api import MESSAGES_PAGE_LIMIT, DiscordRestApi
from mirror_common.audit import AuditLogger
from mirror_common.db import get_connection, health_check
from mirror_common.secrets import get_secret

logger = logging.getLogger("guild_mirror.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("GUILD_MIRROR_CONFIG", "/etc/guild-mirror/settings.toml")
)
_DEFAULT_TOKEN_SECRET = "discord-bot-token"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
        ValueError: If a numeric setting is out of range.
    """
    config = toml.load(path)

    required = [
        ("discord", "guild_id"),
        ("mirror", "db_path"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    # Guild ids are snowflakes; TOML users often write them unquoted.
    config["discord"]["guild_id"] = str(config["discord"]["guild_id"])

    mirror_config = config["mirror"]
    page_size = int(mirror_config.get("page_size", 100))
    if not 1 <= page_size <= MESSAGES_PAGE_LIMIT:
        # Discord serves at most this many messages per request.
        raise ValueError(f"mirror.page_size must be between 1 and {MESSAGES_PAGE_LIMIT}")
    if int(mirror_config.get("reload_window", 50)) < 0:
        raise ValueError("mirror.reload_window must be >= 0")

    return config


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
    """Signal handler: sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def run_pass(mirror: Mirror, audit: AuditLogger, pass_number: int) -> None:
    """Run one full mirror pass and audit its outcome.

    Channel failures are already absorbed by :meth:`Mirror.update`; anything
    raised here aborts the pass.
    """
    summary = await mirror.update(LoggingTaskReporter())
    logger.info(
        "Mirror pass #%d complete: %d members, %d channels, %d messages fetched, "
        "%d channels failed",
        pass_number,
        summary.members,
        summary.channels,
        summary.messages,
        len(summary.failed_channels),
    )
    await audit.log(
        "mirror",
        "sync_pass",
        {
            "pass_number": pass_number,
            "guild_id": summary.guild.id,
            "guild_name": summary.guild.name,
            "members": summary.members,
            "channels": summary.channels,
            "messages": summary.messages,
            "failed_channels": summary.failed_channels,
        },
        success=not summary.failed_channels,
    )


async def main() -> None:
    """Top-level async entry point for the mirror service."""
    config = load_config()
    discord_config = config["discord"]
    mirror_config = config["mirror"]
    guild_id: str = discord_config["guild_id"]
    token = get_secret(discord_config.get("token_secret", _DEFAULT_TOKEN_SECRET))

    audit = AuditLogger(
        Path(config.get("audit", {}).get("log_path", "/var/log/guild-mirror/audit.log"))
    )
    conn = None
    try:
        conn = await get_connection(mirror_config)
        if not await health_check(conn):
            raise RuntimeError(f"Mirror database {mirror_config['db_path']} is unusable")
        store = await MirrorStore.open(conn, guild_id)

        async with DiscordRestApi(token) as api:
            mirror = Mirror(
                store,
                api,
                guild_id,
                audit=audit,
                page_size=int(mirror_config.get("page_size", 100)),
                reload_window=int(mirror_config.get("reload_window", 50)),
            )
            await audit.log("mirror", "startup", {"guild_id": guild_id}, success=True)

            run_once = bool(mirror_config.get("run_once", False))
            sync_interval = float(mirror_config.get("sync_interval_seconds", 3600.0))

            pass_number = 0
            while not _shutdown_event.is_set():
                pass_number += 1
                if run_once:
                    await run_pass(mirror, audit, pass_number)
                    break
                try:
                    await run_pass(mirror, audit, pass_number)
                except GuildNotFoundError:
                    raise
                except Exception:
                    logger.exception("Error during mirror pass #%d", pass_number)
                    await audit.log(
                        "mirror",
                        "sync_pass",
                        {"pass_number": pass_number, "error": "see logs"},
                        success=False,
                    )

                await _sleep_with_shutdown(sync_interval)
    finally:
        try:
            await audit.close()
        except Exception:
            logger.exception("Failed to flush/close audit logger")
        if conn is not None:
            await conn.close()
        logger.info("Mirror shut down cleanly.")


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
