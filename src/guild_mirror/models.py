"""
Mirrored Discord entities and the helpers that give them a stable identity.

Every identifier is a *snowflake*: a decimal string that is time-ordered and
must be compared by numeric magnitude, never lexicographically (``"10"`` sorts
after ``"9"``).  Python ints are arbitrary precision, so ``snowflake_key`` is
safe for ids of any width.

Emoji are flattened to a single string column when stored.  Custom guild emoji
carry an id and encode as ``"name:id"``; generic (unicode) emoji have no id and
encode as just their name.  An emoji *name* containing ``":"`` does not survive
this encoding; Discord does not allow colons in custom emoji names, but unicode
names are not checked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

Snowflake = str

# Lowest possible id; paging "after" it fetches a channel from the beginning.
MIN_SNOWFLAKE: Snowflake = "0"

EMOJI_SEPARATOR = ":"

TEXT_CHANNEL = "GUILD_TEXT"


def is_snowflake(value: object) -> bool:
    """Return True for canonical decimal strings (no sign, no leading zeros)."""
    if not isinstance(value, str) or not value.isascii() or not value.isdigit():
        return False
    return value == "0" or not value.startswith("0")


def snowflake_key(value: Snowflake) -> int:
    """Ordering key for a snowflake.

    Raises:
        ValueError: If *value* is not a canonical decimal string.
    """
    if not is_snowflake(value):
        raise ValueError(f"Not a snowflake: {value!r}")
    return int(value)


def max_snowflake(a: Snowflake, b: Snowflake) -> Snowflake:
    """Return the numerically greater of two snowflakes."""
    return b if snowflake_key(b) > snowflake_key(a) else a


@dataclass(frozen=True)
class Guild:
    id: Snowflake
    name: str


@dataclass(frozen=True)
class User:
    id: Snowflake
    username: str
    discriminator: str
    bot: bool = False


@dataclass(frozen=True)
class GuildMember:
    user: User
    nick: Optional[str] = None


@dataclass(frozen=True)
class Channel:
    id: Snowflake
    name: str
    type: str = TEXT_CHANNEL


@dataclass(frozen=True)
class Emoji:
    """An emoji kind.  ``id`` is ``None`` for generic unicode emoji."""

    name: str
    id: Optional[Snowflake] = None


@dataclass(frozen=True)
class Message:
    id: Snowflake
    channel_id: Snowflake
    author_id: Snowflake
    timestamp_ms: int
    content: str
    reaction_emoji: Tuple[Emoji, ...] = field(default_factory=tuple)
    non_user_author: bool = False
    mentions: Tuple[Snowflake, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Reaction:
    """One user's reaction with one emoji kind on one message."""

    emoji: Emoji
    channel_id: Snowflake
    message_id: Snowflake
    author_id: Snowflake


# ---------------------------------------------------------------------------
# Emoji codec
# ---------------------------------------------------------------------------


def encode_emoji(emoji: Emoji) -> str:
    if emoji.id is None:
        return emoji.name
    return f"{emoji.name}{EMOJI_SEPARATOR}{emoji.id}"


def decode_emoji(ref: str) -> Emoji:
    """Inverse of :func:`encode_emoji`.

    The string is split at the first separator, so a generic emoji whose
    name contains ``":"`` decodes as a custom emoji.
    """
    name, sep, emoji_id = ref.partition(EMOJI_SEPARATOR)
    if not sep:
        return Emoji(name=ref, id=None)
    return Emoji(name=name, id=emoji_id)
