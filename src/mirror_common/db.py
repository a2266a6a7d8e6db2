"""
Database helpers: connection management and health checks for the SQLite
mirror file.

Uses ``aiosqlite`` so store writes are awaited like every other I/O step of
a sync run.  Schema creation lives with the store itself
(:meth:`guild_mirror.mirror_store.MirrorStore.open`) because it is tied to
the fingerprint check.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

import aiosqlite

logger = logging.getLogger("mirror_common.db")

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


async def get_connection(config: Dict[str, Any]) -> aiosqlite.Connection:
    """Open the mirror database file.

    Args:
        config: The ``[mirror]`` config section; uses ``db_path``
                (``":memory:"`` is accepted for throwaway mirrors).

    Returns:
        An open ``aiosqlite.Connection`` with pragmas applied.

    Raises:
        KeyError: If ``db_path`` is missing.
        sqlite3.Error: If the file cannot be opened.
    """
    db_path = str(config["db_path"])
    if db_path != ":memory:":
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    for pragma in _PRAGMAS:
        await conn.execute(pragma)
    logger.info("Opened mirror database at %s", db_path)
    return conn


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(conn: aiosqlite.Connection) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with conn.execute("SELECT 1") as cursor:
            row = await cursor.fetchone()
        return row is not None and row[0] == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
