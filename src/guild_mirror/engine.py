"""
Sync engine: pulls one guild from a ``RemoteApi`` into a ``MirrorStore``.

A run moves through::

    NOT_STARTED -> VALIDATING_GUILD -> SYNCING_MEMBERS -> SYNCING_CHANNELS
                -> SYNCING_MESSAGES (one channel at a time) -> DONE

Guild validation is the only step allowed to fail before anything is
written.  Each channel syncs independently: a failure marks that channel
``FAILED``, is logged and audited, and the run moves on.

Everything is strictly sequential.  One remote call or one store write is in
flight at a time, which keeps the run under the platform's rate limits and
means the store needs no locking or cross-row transactions.  A crash leaves
every committed row valid; the next run resumes each channel from the store
(see :meth:`Mirror.sync_messages`).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from guild_mirror.mirror_store import MirrorStore
from guild_mirror.models import (
    MIN_SNOWFLAKE,
    TEXT_CHANNEL,
    Channel,
    Guild,
    GuildMember,
    Message,
    Snowflake,
    max_snowflake,
)
from guild_mirror.progress import ChannelProgress, TaskReporter
from guild_mirror.remote_api import RemoteApi
from mirror_common.audit import AuditLogger

logger = logging.getLogger("guild_mirror.engine")

# How many of the newest mirrored messages are re-fetched on every run, so
# reactions added after a message was first mirrored are picked up.
RELOAD_WINDOW = 50
PAGE_SIZE = 100
TASK_PREFIX = "discord"


class GuildNotFoundError(Exception):
    """The configured guild is not visible to the API credentials."""


class SyncState(enum.Enum):
    NOT_STARTED = "not_started"
    VALIDATING_GUILD = "validating_guild"
    SYNCING_MEMBERS = "syncing_members"
    SYNCING_CHANNELS = "syncing_channels"
    SYNCING_MESSAGES = "syncing_messages"
    DONE = "done"


class ChannelStatus(enum.Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncSummary:
    guild: Guild
    members: int = 0
    channels: int = 0
    messages: int = 0
    failed_channels: List[Snowflake] = field(default_factory=list)


class Mirror:
    """Incrementally mirrors one guild.

    Args:
        store: Local mirror, already opened for *guild_id*.
        api: Remote API implementation.
        guild_id: The guild to mirror.
        audit: Optional audit trail for per-channel results.
        page_size: Messages requested per page.
        reload_window: Newest mirrored messages re-fetched per channel.
    """

    def __init__(
        self,
        store: MirrorStore,
        api: RemoteApi,
        guild_id: Snowflake,
        audit: Optional[AuditLogger] = None,
        page_size: int = PAGE_SIZE,
        reload_window: int = RELOAD_WINDOW,
    ) -> None:
        self._store = store
        self._api = api
        self.guild_id = guild_id
        self._audit = audit
        self.page_size = page_size
        self.reload_window = reload_window
        self.state = SyncState.NOT_STARTED
        self.channel_status: Dict[Snowflake, ChannelStatus] = {}

    async def validate_guild(self) -> Guild:
        """Return the target guild from the API's accessible guilds.

        Raises:
            GuildNotFoundError: If the guild is not in the list.
        """
        self.state = SyncState.VALIDATING_GUILD
        guilds = await self._api.guilds()
        for guild in guilds:
            if guild.id == self.guild_id:
                return guild
        raise GuildNotFoundError(
            f"Couldn't find guild with ID {self.guild_id}\n"
            "Maybe the bot has no access to it?"
        )

    async def sync_members(self) -> List[GuildMember]:
        """Upsert every remote member.  Departed members are kept."""
        self.state = SyncState.SYNCING_MEMBERS
        members = await self._api.members(self.guild_id)
        for member in members:
            await self._store.add_member(member)
        logger.info("Synced %d members for guild %s", len(members), self.guild_id)
        return await self._store.members()

    async def sync_channels(self) -> List[Channel]:
        """Upsert text channels; other channel kinds are skipped."""
        self.state = SyncState.SYNCING_CHANNELS
        channels = await self._api.channels(self.guild_id)
        text_channels = [c for c in channels if c.type == TEXT_CHANNEL]
        for channel in text_channels:
            await self._store.add_channel(channel)
        logger.info(
            "Synced %d text channels (of %d) for guild %s",
            len(text_channels),
            len(channels),
            self.guild_id,
        )
        return await self._store.channels()

    async def sync_messages(
        self,
        channel_id: Snowflake,
        page_size: Optional[int] = None,
        reload_window: Optional[int] = None,
        progress: Optional[ChannelProgress] = None,
    ) -> List[Message]:
        """Page a channel's messages and their reactions into the store.

        Paging starts after the message that ``reload_window`` mirrored
        messages are newer than, so the newest ``reload_window`` messages are
        fetched again and their reactions refreshed.  A channel with no more
        than ``reload_window`` messages mirrored is fetched from the start.

        Paging stops at the first page shorter than ``page_size``.

        Returns:
            All mirrored messages for the channel, oldest first.
        """
        page_size = self.page_size if page_size is None else page_size
        reload_window = self.reload_window if reload_window is None else reload_window
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        if reload_window < 0:
            raise ValueError(f"reload_window must be >= 0, got {reload_window}")

        load_start = await self._store.nth_message_id_from_tail(channel_id, reload_window)
        after = load_start if load_start is not None else MIN_SNOWFLAKE
        logger.debug("Channel %s: resuming after message %s", channel_id, after)

        while True:
            page = await self._api.messages(channel_id, after, page_size)
            page_reactions = 0
            for message in page:
                after = max_snowflake(after, message.id)
                await self._store.add_message(message)
                for user_id in message.mentions:
                    await self._store.add_mention(message, user_id)
                for emoji in message.reaction_emoji:
                    reactions = await self._api.reactions(channel_id, message.id, emoji)
                    for reaction in reactions:
                        await self._store.add_reaction(reaction)
                    page_reactions += len(reactions)

            if progress is not None:
                progress.update(len(page), page_reactions)
                progress.log_page()
            if len(page) < page_size:
                break

        return await self._store.messages(channel_id)

    async def update(self, reporter: TaskReporter) -> SyncSummary:
        """Run a full sync: guild, members, channels, then each channel's messages.

        Raises:
            GuildNotFoundError: Before anything is written, if the guild is
                not accessible.
        """
        guild = await self.validate_guild()
        guild_label = f"{TASK_PREFIX}/{guild.name}"
        reporter.start(guild_label)
        try:
            summary = await self._sync_guild(guild, guild_label, reporter)
        finally:
            reporter.finish(guild_label)
        self.state = SyncState.DONE
        return summary

    async def _sync_guild(
        self, guild: Guild, guild_label: str, reporter: TaskReporter
    ) -> SyncSummary:
        members = await self.sync_members()
        channels = await self.sync_channels()
        summary = SyncSummary(guild=guild, members=len(members), channels=len(channels))
        self.channel_status = {c.id: ChannelStatus.PENDING for c in channels}

        self.state = SyncState.SYNCING_MESSAGES
        for index, channel in enumerate(channels, start=1):
            channel_label = f"{guild_label}/#{channel.name}"
            reporter.start(channel_label)
            try:
                await self._sync_channel(channel, index, len(channels), summary)
            finally:
                reporter.finish(channel_label)

        return summary

    async def _sync_channel(
        self, channel: Channel, index: int, total: int, summary: SyncSummary
    ) -> None:
        self.channel_status[channel.id] = ChannelStatus.SYNCING
        progress = ChannelProgress(index, total, channel.name)
        try:
            await self.sync_messages(channel.id, progress=progress)
        except Exception as exc:
            self.channel_status[channel.id] = ChannelStatus.FAILED
            summary.failed_channels.append(channel.id)
            logger.warning(
                "Sync failed for channel %s (#%s); continuing",
                channel.id,
                channel.name,
                exc_info=True,
            )
            await self._audit_channel(channel, progress, error=repr(exc))
        else:
            self.channel_status[channel.id] = ChannelStatus.DONE
            progress.log_complete()
            await self._audit_channel(channel, progress)
        summary.messages += progress.messages

    async def _audit_channel(
        self,
        channel: Channel,
        progress: ChannelProgress,
        error: Optional[str] = None,
    ) -> None:
        if self._audit is None:
            return
        details = {
            "guild_id": self.guild_id,
            "channel_id": channel.id,
            "channel_name": channel.name,
            "pages": progress.pages,
            "messages": progress.messages,
            "reactions": progress.reactions,
            "elapsed_seconds": round(progress.elapsed_seconds, 1),
        }
        if error is not None:
            details["error"] = error
        await self._audit.log("mirror", "sync_channel", details, success=error is None)
