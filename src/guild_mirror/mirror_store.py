"""
SQLite storage for the guild mirror.

Uses ``aiosqlite`` for async access.  All queries use ``?`` placeholders,
never string interpolation.

One store file mirrors exactly one guild under one schema version.  The pair
is written to the ``meta`` table the first time the store is opened and is
checked on every later open; a mismatch is a hard failure.  The store never
migrates or wipes existing data.

Entities are upserted (last write wins); reactions and mentions are
insert-or-ignore on their full key, so every write is independently
idempotent and a crash mid-sync leaves nothing to roll back.
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Sequence

import aiosqlite

from guild_mirror.models import (
    Channel,
    Emoji,
    GuildMember,
    Message,
    Reaction,
    Snowflake,
    User,
    decode_emoji,
    encode_emoji,
    is_snowflake,
)

logger = logging.getLogger("guild_mirror.mirror_store")

# Bump when the table layout changes.  Stores written by another version are
# rejected on open.
SCHEMA_VERSION = "discord_mirror_v1"

_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS meta (
        zero   INTEGER PRIMARY KEY,
        config TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS channels (
        id   TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        name TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS users (
        id            TEXT PRIMARY KEY,
        username      TEXT NOT NULL,
        discriminator TEXT NOT NULL,
        bot           INTEGER NOT NULL
    );
    CREATE TABLE IF NOT EXISTS members (
        user_id TEXT PRIMARY KEY,
        nick    TEXT,
        FOREIGN KEY (user_id) REFERENCES users (id)
    );
    CREATE TABLE IF NOT EXISTS messages (
        id              TEXT PRIMARY KEY,
        channel_id      TEXT NOT NULL,
        author_id       TEXT NOT NULL,
        non_user_author INTEGER NOT NULL,
        timestamp_ms    INTEGER NOT NULL,
        content         TEXT NOT NULL,
        FOREIGN KEY (channel_id) REFERENCES channels (id)
    );
    CREATE INDEX IF NOT EXISTS idx_messages_channel
        ON messages (channel_id);
    CREATE TABLE IF NOT EXISTS message_reactions (
        channel_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        author_id  TEXT NOT NULL,
        emoji      TEXT NOT NULL,
        PRIMARY KEY (channel_id, message_id, author_id, emoji)
    );
    CREATE TABLE IF NOT EXISTS message_mentions (
        channel_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        user_id    TEXT NOT NULL,
        PRIMARY KEY (channel_id, message_id, user_id)
    );
"""

_UPSERT_USER_SQL = """
    INSERT INTO users (id, username, discriminator, bot)
    VALUES (?, ?, ?, ?)
    ON CONFLICT (id) DO UPDATE SET
        username = excluded.username,
        discriminator = excluded.discriminator,
        bot = excluded.bot
"""

_UPSERT_MEMBER_SQL = """
    INSERT INTO members (user_id, nick)
    VALUES (?, ?)
    ON CONFLICT (user_id) DO UPDATE SET nick = excluded.nick
"""

_UPSERT_CHANNEL_SQL = """
    INSERT INTO channels (id, type, name)
    VALUES (?, ?, ?)
    ON CONFLICT (id) DO UPDATE SET
        type = excluded.type,
        name = excluded.name
"""

_UPSERT_MESSAGE_SQL = """
    INSERT INTO messages (
        id, channel_id, author_id, non_user_author, timestamp_ms, content
    )
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT (id) DO UPDATE SET
        channel_id = excluded.channel_id,
        author_id = excluded.author_id,
        non_user_author = excluded.non_user_author,
        timestamp_ms = excluded.timestamp_ms,
        content = excluded.content
"""

_INSERT_REACTION_SQL = """
    INSERT OR IGNORE INTO message_reactions (channel_id, message_id, author_id, emoji)
    VALUES (?, ?, ?, ?)
"""

_INSERT_MENTION_SQL = """
    INSERT OR IGNORE INTO message_mentions (channel_id, message_id, user_id)
    VALUES (?, ?, ?)
"""

# Canonical decimal strings order numerically by (length, text).
_SNOWFLAKE_ASC = "length(id) ASC, id ASC"
_SNOWFLAKE_DESC = "length(id) DESC, id DESC"


class ConfigMismatchError(Exception):
    """The store already holds a mirror of another guild or schema version."""


class MissingReferenceError(Exception):
    """A row was added before a row it refers to."""


# ---------------------------------------------------------------------------
# Storage boundary coercion
# ---------------------------------------------------------------------------


def encode_bool(value: bool) -> int:
    if not isinstance(value, bool):
        raise TypeError(f"Expected bool, got {type(value).__name__}")
    return 1 if value else 0


def decode_bool(value: int) -> bool:
    if value == 1:
        return True
    if value == 0:
        return False
    raise ValueError(f"Stored boolean must be 0 or 1, got {value!r}")


def _require_id(kind: str, value: str) -> None:
    if not value:
        raise ValueError(f"{kind} id must be non-empty")


class MirrorStore:
    """Typed upsert/query layer over one SQLite mirror.

    Use :meth:`open` rather than the constructor; it creates the schema and
    checks the fingerprint.

    Args:
        conn: An open ``aiosqlite`` connection (see
              :func:`mirror_common.db.get_connection`).
        guild_id: The guild this store mirrors.
    """

    def __init__(self, conn: aiosqlite.Connection, guild_id: Snowflake) -> None:
        self._conn = conn
        self.guild_id = guild_id

    @classmethod
    async def open(
        cls,
        conn: aiosqlite.Connection,
        guild_id: Snowflake,
        schema_version: str = SCHEMA_VERSION,
    ) -> "MirrorStore":
        """Initialise *conn* as a mirror of *guild_id*.

        Raises:
            ConfigMismatchError: If the store was created for a different
                guild or schema version.
        """
        _require_id("Guild", guild_id)
        config = json.dumps({"version": schema_version, "guild": guild_id})

        await conn.executescript(_SCHEMA_SQL)
        async with conn.execute("SELECT config FROM meta WHERE zero = 0") as cursor:
            row = await cursor.fetchone()

        if row is None:
            await conn.execute(
                "INSERT INTO meta (zero, config) VALUES (0, ?)", (config,)
            )
            await conn.commit()
            logger.info(
                "Initialised new mirror for guild=%s version=%s",
                guild_id,
                schema_version,
            )
        elif row[0] != config:
            raise ConfigMismatchError(
                "Database already populated with incompatible server or version: "
                f"stored={row[0]} requested={config}"
            )
        else:
            await conn.commit()
            logger.debug("Opened existing mirror for guild=%s", guild_id)

        return cls(conn, guild_id)

    async def close(self) -> None:
        await self._conn.close()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def add_user(self, user: User) -> None:
        await self._upsert_user(user)
        await self._conn.commit()

    async def _upsert_user(self, user: User) -> None:
        _require_id("User", user.id)
        await self._conn.execute(
            _UPSERT_USER_SQL,
            (user.id, user.username, user.discriminator, encode_bool(user.bot)),
        )

    async def add_member(self, member: GuildMember) -> None:
        """Upsert the member's user, then the member row keyed by user id."""
        await self._upsert_user(member.user)
        await self._conn.execute(_UPSERT_MEMBER_SQL, (member.user.id, member.nick))
        await self._conn.commit()

    async def add_channel(self, channel: Channel) -> None:
        _require_id("Channel", channel.id)
        await self._conn.execute(
            _UPSERT_CHANNEL_SQL, (channel.id, channel.type, channel.name)
        )
        await self._conn.commit()

    async def add_message(self, message: Message) -> None:
        """Upsert a message row.

        Reaction emoji and mentions are *not* written here; they live in the
        association tables (see :meth:`add_reaction`, :meth:`add_mention`).

        Raises:
            ValueError: If the message id is not a snowflake.
            MissingReferenceError: If the channel has not been added, or the
                author has not been added and ``non_user_author`` is False.
        """
        if not is_snowflake(message.id):
            raise ValueError(f"Message id must be a snowflake, got {message.id!r}")
        if not await self._exists("channels", "id", message.channel_id):
            raise MissingReferenceError(
                f"Message {message.id}: channel {message.channel_id} not in store"
            )
        if not message.non_user_author and not await self._exists(
            "users", "id", message.author_id
        ):
            raise MissingReferenceError(
                f"Message {message.id}: author {message.author_id} not in store"
            )

        await self._conn.execute(
            _UPSERT_MESSAGE_SQL,
            (
                message.id,
                message.channel_id,
                message.author_id,
                encode_bool(message.non_user_author),
                message.timestamp_ms,
                message.content,
            ),
        )
        await self._conn.commit()

    async def add_reaction(self, reaction: Reaction) -> None:
        """Record a reaction; a duplicate tuple is silently ignored."""
        _require_id("Message", reaction.message_id)
        _require_id("User", reaction.author_id)
        await self._conn.execute(
            _INSERT_REACTION_SQL,
            (
                reaction.channel_id,
                reaction.message_id,
                reaction.author_id,
                encode_emoji(reaction.emoji),
            ),
        )
        await self._conn.commit()

    async def add_mention(self, message: Message, user_id: Snowflake) -> None:
        """Record that *message* mentions *user_id*; duplicates are ignored."""
        _require_id("User", user_id)
        await self._conn.execute(
            _INSERT_MENTION_SQL, (message.channel_id, message.id, user_id)
        )
        await self._conn.commit()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def _exists(self, table: str, column: str, value: str) -> bool:
        async with self._conn.execute(
            f"SELECT 1 FROM {table} WHERE {column} = ? LIMIT 1", (value,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def user(self, user_id: Snowflake) -> Optional[User]:
        async with self._conn.execute(
            "SELECT id, username, discriminator, bot FROM users WHERE id = ?",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _user_from_row(row) if row is not None else None

    async def users(self) -> List[User]:
        async with self._conn.execute(
            "SELECT id, username, discriminator, bot FROM users ORDER BY rowid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_user_from_row(row) for row in rows]

    async def member(self, user_id: Snowflake) -> Optional[GuildMember]:
        async with self._conn.execute(
            """
            SELECT u.id, u.username, u.discriminator, u.bot, m.nick
            FROM members AS m
            JOIN users AS u ON u.id = m.user_id
            WHERE m.user_id = ?
            """,
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _member_from_row(row) if row is not None else None

    async def members(self) -> List[GuildMember]:
        async with self._conn.execute(
            """
            SELECT u.id, u.username, u.discriminator, u.bot, m.nick
            FROM members AS m
            JOIN users AS u ON u.id = m.user_id
            ORDER BY m.rowid
            """
        ) as cursor:
            rows = await cursor.fetchall()
        return [_member_from_row(row) for row in rows]

    async def channels(self) -> List[Channel]:
        async with self._conn.execute(
            "SELECT id, name, type FROM channels ORDER BY rowid"
        ) as cursor:
            rows = await cursor.fetchall()
        return [Channel(id=row[0], name=row[1], type=row[2]) for row in rows]

    async def messages(self, channel_id: Snowflake) -> List[Message]:
        """Return the channel's messages oldest first, fully reconstructed."""
        async with self._conn.execute(
            f"""
            SELECT id, channel_id, author_id, non_user_author, timestamp_ms, content
            FROM messages
            WHERE channel_id = ?
            ORDER BY {_SNOWFLAKE_ASC}
            """,
            (channel_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        result: List[Message] = []
        for row in rows:
            message_id = row[0]
            result.append(
                Message(
                    id=message_id,
                    channel_id=row[1],
                    author_id=row[2],
                    non_user_author=decode_bool(row[3]),
                    timestamp_ms=row[4],
                    content=row[5],
                    reaction_emoji=tuple(
                        await self.reaction_emoji(channel_id, message_id)
                    ),
                    mentions=tuple(await self.mentions(channel_id, message_id)),
                )
            )
        return result

    async def message_count(self, channel_id: Snowflake) -> int:
        async with self._conn.execute(
            "SELECT COUNT(*) FROM messages WHERE channel_id = ?", (channel_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0])

    async def reactions(
        self, channel_id: Snowflake, message_id: Snowflake
    ) -> List[Reaction]:
        async with self._conn.execute(
            """
            SELECT emoji, author_id
            FROM message_reactions
            WHERE channel_id = ? AND message_id = ?
            ORDER BY rowid
            """,
            (channel_id, message_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Reaction(
                emoji=decode_emoji(row[0]),
                channel_id=channel_id,
                message_id=message_id,
                author_id=row[1],
            )
            for row in rows
        ]

    async def reaction_emoji(
        self, channel_id: Snowflake, message_id: Snowflake
    ) -> List[Emoji]:
        """Distinct emoji kinds on a message, in order of first reaction."""
        async with self._conn.execute(
            """
            SELECT emoji
            FROM message_reactions
            WHERE channel_id = ? AND message_id = ?
            GROUP BY emoji
            ORDER BY MIN(rowid)
            """,
            (channel_id, message_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [decode_emoji(row[0]) for row in rows]

    async def mentions(
        self, channel_id: Snowflake, message_id: Snowflake
    ) -> List[Snowflake]:
        async with self._conn.execute(
            """
            SELECT user_id
            FROM message_mentions
            WHERE channel_id = ? AND message_id = ?
            ORDER BY rowid
            """,
            (channel_id, message_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def nth_message_id_from_tail(
        self, channel_id: Snowflake, n: int
    ) -> Optional[Snowflake]:
        """Return the id that exactly *n* mirrored messages are newer than.

        With ids ``"1"``..``"10"`` mirrored, ``n=3`` gives ``"7"``.  Returns
        ``None`` when the channel holds ``n`` or fewer messages.
        """
        if n < 0:
            raise ValueError(f"n must be >= 0, got {n}")
        async with self._conn.execute(
            f"""
            SELECT id
            FROM messages
            WHERE channel_id = ?
            ORDER BY {_SNOWFLAKE_DESC}
            LIMIT 1 OFFSET ?
            """,
            (channel_id, n),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None


def _user_from_row(row: Sequence[Any]) -> User:
    return User(
        id=row[0],
        username=row[1],
        discriminator=row[2],
        bot=decode_bool(row[3]),
    )


def _member_from_row(row: Sequence[Any]) -> GuildMember:
    return GuildMember(user=_user_from_row(row), nick=row[4])
