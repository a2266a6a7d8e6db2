"""
Remote API access for the mirror.

``RemoteApi`` is the capability interface the sync engine depends on: five
read operations and nothing else.  ``DiscordRestApi`` implements it over the
Discord REST API with ``aiohttp``.

The REST client is read-only by construction:
    - Default-deny: only the GET routes in ``ALLOWED_ROUTES`` can be requested.
    - Any other method or route raises ``PermissionError`` and is logged at
      CRITICAL before a request is made.
    - Rate limits (HTTP 429) are honoured with the server-provided delay;
      transport errors are retried a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Protocol
from urllib.parse import quote

import aiohttp

from guild_mirror.models import (
    TEXT_CHANNEL,
    Channel,
    Emoji,
    Guild,
    GuildMember,
    Message,
    Reaction,
    Snowflake,
    User,
    encode_emoji,
    snowflake_key,
)

logger = logging.getLogger("guild_mirror.remote_api")

BASE_URL = "https://discord.com/api/v10"
REQUEST_TIMEOUT = 30
MAX_RETRIES = 3
GUILDS_PAGE_LIMIT = 200
MEMBERS_PAGE_LIMIT = 1000
MESSAGES_PAGE_LIMIT = 100
REACTIONS_PAGE_LIMIT = 100

# ---------------------------------------------------------------------------
# Allowed routes: read-only endpoints, keyed by route template.
# Do NOT add POST/PATCH/PUT/DELETE routes; the mirror never writes to Discord.
# ---------------------------------------------------------------------------
ALLOWED_ROUTES: FrozenSet[str] = frozenset(
    {
        "/users/@me/guilds",
        "/guilds/{guild_id}/members",
        "/guilds/{guild_id}/channels",
        "/channels/{channel_id}/messages",
        "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}",
    }
)

# https://discord.com/developers/docs/resources/channel#channel-object-channel-types
_CHANNEL_TYPES: Dict[int, str] = {
    0: TEXT_CHANNEL,
    1: "DM",
    2: "GUILD_VOICE",
    3: "GROUP_DM",
    4: "GUILD_CATEGORY",
    5: "GUILD_ANNOUNCEMENT",
    10: "ANNOUNCEMENT_THREAD",
    11: "PUBLIC_THREAD",
    12: "PRIVATE_THREAD",
    13: "GUILD_STAGE_VOICE",
    15: "GUILD_FORUM",
}


class RemoteApi(Protocol):
    """Everything the sync engine needs from the remote platform."""

    async def guilds(self) -> List[Guild]: ...

    async def members(self, guild_id: Snowflake) -> List[GuildMember]: ...

    async def channels(self, guild_id: Snowflake) -> List[Channel]: ...

    async def messages(
        self, channel_id: Snowflake, after_id: Snowflake, limit: int
    ) -> List[Message]:
        """Up to *limit* messages with id > *after_id*, ascending."""
        ...

    async def reactions(
        self, channel_id: Snowflake, message_id: Snowflake, emoji: Emoji
    ) -> List[Reaction]: ...


class DiscordApiError(Exception):
    """Non-success response from the Discord API."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        super().__init__(f"Discord API error {status}: {message}")


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_user(data: Dict[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        username=data["username"],
        discriminator=str(data.get("discriminator") or "0"),
        bot=bool(data.get("bot", False)),
    )


def parse_member(data: Dict[str, Any]) -> GuildMember:
    return GuildMember(user=parse_user(data["user"]), nick=data.get("nick"))


def parse_channel(data: Dict[str, Any]) -> Channel:
    raw_type = data.get("type")
    kind = _CHANNEL_TYPES.get(raw_type, f"UNKNOWN_{raw_type}")
    return Channel(id=str(data["id"]), name=data.get("name") or "", type=kind)


def parse_emoji(data: Dict[str, Any]) -> Emoji:
    emoji_id = data.get("id")
    return Emoji(name=data["name"], id=str(emoji_id) if emoji_id is not None else None)


def _parse_timestamp_ms(value: str) -> int:
    # Discord timestamps are ISO 8601 with an explicit offset.
    return int(datetime.fromisoformat(value).timestamp() * 1000)


def parse_message(data: Dict[str, Any]) -> Message:
    """Convert a message payload.

    Webhook messages carry a synthetic author that is never a guild member,
    so they are flagged ``non_user_author``.
    """
    return Message(
        id=str(data["id"]),
        channel_id=str(data["channel_id"]),
        author_id=str(data["author"]["id"]),
        timestamp_ms=_parse_timestamp_ms(data["timestamp"]),
        content=data.get("content") or "",
        reaction_emoji=tuple(
            parse_emoji(reaction["emoji"]) for reaction in data.get("reactions") or []
        ),
        non_user_author=data.get("webhook_id") is not None,
        mentions=tuple(str(user["id"]) for user in data.get("mentions") or []),
    )


class DiscordRestApi:
    """Read-only ``RemoteApi`` over the Discord REST API.

    Usage::

        async with DiscordRestApi(token) as api:
            guilds = await api.guilds()

    Args:
        token: Bot token (sent as ``Authorization: Bot <token>``).
        base_url: API root, overridable for testing.
    """

    def __init__(self, token: str, base_url: str = BASE_URL) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    # ----- lifecycle -------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        self._session = aiohttp.ClientSession(
            headers={
                "Authorization": f"Bot {self._token}",
                "User-Agent": "DiscordBot (guild-mirror, 0.1.0)",
            },
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
        )
        logger.info("Discord REST client connected.")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("Discord REST client closed.")
        self._session = None

    async def __aenter__(self) -> "DiscordRestApi":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ----- transport -------------------------------------------------------

    def _check_allowed(self, method: str, route: str) -> None:
        if method != "GET" or route not in ALLOWED_ROUTES:
            logger.critical(
                "BLOCKED  | method=%s route=%s  - PermissionError raised",
                method,
                route,
            )
            raise PermissionError(
                f"DiscordRestApi: {method} {route} is denied. "
                f"Only GET on these routes is permitted: {sorted(ALLOWED_ROUTES)}"
            )

    async def _request(
        self,
        method: str,
        route: str,
        params: Optional[Dict[str, Any]] = None,
        **path: str,
    ) -> Any:
        """Issue a request for an allowlisted *route* and return decoded JSON."""
        self._check_allowed(method, route)
        if not self.is_connected:
            raise DiscordApiError(0, "Client not connected. Call connect() first.")

        url = self._base_url + route.format(
            **{key: quote(value, safe="") for key, value in path.items()}
        )
        for attempt in range(MAX_RETRIES):
            try:
                async with self._session.request(method, url, params=params) as resp:
                    if resp.status == 429:
                        body = await resp.json()
                        retry_after = min(float(body.get("retry_after", 5)), 60.0)
                        logger.warning(
                            "Rate limited on %s; retrying after %.1fs", route, retry_after
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    if resp.status >= 400:
                        raise DiscordApiError(resp.status, await resp.text())
                    return await resp.json()
            except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                if attempt < MAX_RETRIES - 1:
                    logger.warning(
                        "Request to %s failed (attempt %d): %s", route, attempt + 1, exc
                    )
                    await asyncio.sleep(2**attempt)
                    continue
                raise DiscordApiError(
                    0, f"Request failed after {MAX_RETRIES} attempts: {exc}"
                ) from exc

        raise DiscordApiError(429, f"Still rate limited after {MAX_RETRIES} attempts")

    async def _get(self, route: str, params: Optional[Dict[str, Any]] = None, **path: str) -> Any:
        return await self._request("GET", route, params=params, **path)

    # ----- RemoteApi -------------------------------------------------------

    async def guilds(self) -> List[Guild]:
        result: List[Guild] = []
        after = "0"
        while True:
            page = await self._get(
                "/users/@me/guilds",
                params={"limit": GUILDS_PAGE_LIMIT, "after": after},
            )
            result.extend(Guild(id=str(g["id"]), name=g["name"]) for g in page)
            if len(page) < GUILDS_PAGE_LIMIT:
                return result
            after = str(page[-1]["id"])

    async def members(self, guild_id: Snowflake) -> List[GuildMember]:
        result: List[GuildMember] = []
        after = "0"
        while True:
            page = await self._get(
                "/guilds/{guild_id}/members",
                params={"limit": MEMBERS_PAGE_LIMIT, "after": after},
                guild_id=guild_id,
            )
            result.extend(parse_member(m) for m in page)
            if len(page) < MEMBERS_PAGE_LIMIT:
                return result
            after = str(page[-1]["user"]["id"])

    async def channels(self, guild_id: Snowflake) -> List[Channel]:
        data = await self._get("/guilds/{guild_id}/channels", guild_id=guild_id)
        return [parse_channel(c) for c in data]

    async def messages(
        self, channel_id: Snowflake, after_id: Snowflake, limit: int
    ) -> List[Message]:
        if not 1 <= limit <= MESSAGES_PAGE_LIMIT:
            raise ValueError(
                f"limit must be between 1 and {MESSAGES_PAGE_LIMIT}, got {limit}"
            )
        data = await self._get(
            "/channels/{channel_id}/messages",
            params={"after": after_id, "limit": limit},
            channel_id=channel_id,
        )
        messages = [parse_message(m) for m in data]
        # Discord returns "after" pages newest first.
        messages.sort(key=lambda m: snowflake_key(m.id))
        return messages

    async def reactions(
        self, channel_id: Snowflake, message_id: Snowflake, emoji: Emoji
    ) -> List[Reaction]:
        result: List[Reaction] = []
        after = "0"
        while True:
            page = await self._get(
                "/channels/{channel_id}/messages/{message_id}/reactions/{emoji}",
                params={"limit": REACTIONS_PAGE_LIMIT, "after": after},
                channel_id=channel_id,
                message_id=message_id,
                emoji=encode_emoji(emoji),
            )
            result.extend(
                Reaction(
                    emoji=emoji,
                    channel_id=channel_id,
                    message_id=message_id,
                    author_id=str(user["id"]),
                )
                for user in page
            )
            if len(page) < REACTIONS_PAGE_LIMIT:
                return result
            after = str(page[-1]["id"])
