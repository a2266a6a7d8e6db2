"""
Shared fixtures and entity builders for the mirror test suites.
"""

import aiosqlite
import pytest_asyncio

from guild_mirror.mirror_store import MirrorStore
from guild_mirror.models import Channel, Emoji, GuildMember, Message, User

TEST_TIMESTAMP_MS = 1583278510615  # 2020-03-03T23:35:10.615000+00:00


def custom_emoji() -> Emoji:
    return Emoji(id="id", name="name")


def generic_emoji() -> Emoji:
    return Emoji(id=None, name="🐙")


def make_channel(channel_id: str, name: str = "testChannelName") -> Channel:
    return Channel(id=channel_id, name=name, type="GUILD_TEXT")


def make_user(user_id: str) -> User:
    return User(id=user_id, username="username", discriminator="disc", bot=True)


def make_member(user_id: str) -> GuildMember:
    return GuildMember(user=make_user(user_id), nick="nickname")


def make_message(
    message_id: str,
    channel_id: str,
    author_id: str,
    timestamp_ms: int = TEST_TIMESTAMP_MS,
    **overrides,
) -> Message:
    fields = dict(
        id=message_id,
        channel_id=channel_id,
        author_id=author_id,
        timestamp_ms=timestamp_ms,
        content="Just going to drop this here",
        reaction_emoji=(custom_emoji(),),
        non_user_author=False,
        mentions=("1", "23"),
    )
    fields.update(overrides)
    return Message(**fields)


@pytest_asyncio.fixture
async def conn():
    """A fresh in-memory SQLite handle."""
    connection = await aiosqlite.connect(":memory:")
    yield connection
    await connection.close()


@pytest_asyncio.fixture
async def store(conn):
    return await MirrorStore.open(conn, "0")
