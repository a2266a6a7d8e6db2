"""
Unit tests for the sync engine, driven by an in-memory fake of the remote
API and a real in-memory store.
"""

from typing import Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from guild_mirror.engine import (
    ChannelStatus,
    GuildNotFoundError,
    Mirror,
    SyncState,
)
from guild_mirror.models import Channel, Emoji, Guild, Reaction, snowflake_key
from guild_mirror.progress import LoggingTaskReporter

from conftest import custom_emoji, make_channel, make_member, make_message, make_user

GUILD = Guild(id="0", name="Test Guild")


class FakeRemoteApi:
    """Serves a fixed guild from memory and records every messages() cursor."""

    def __init__(self):
        self.guild_list = [GUILD]
        self.member_list = []
        self.channel_list: List[Channel] = []
        self.channel_messages: Dict[str, list] = {}
        self.reaction_authors: Dict[tuple, List[str]] = {}
        self.message_calls: List[tuple] = []
        self.failing_channels = set()
        self.newest_first = False

    async def guilds(self):
        return list(self.guild_list)

    async def members(self, guild_id):
        return list(self.member_list)

    async def channels(self, guild_id):
        return list(self.channel_list)

    async def messages(self, channel_id, after_id, limit):
        self.message_calls.append((channel_id, after_id, limit))
        if channel_id in self.failing_channels:
            raise RuntimeError("remote exploded")
        newer = [
            m
            for m in self.channel_messages.get(channel_id, [])
            if snowflake_key(m.id) > snowflake_key(after_id)
        ]
        newer.sort(key=lambda m: snowflake_key(m.id))
        page = newer[:limit]
        if self.newest_first:
            page.reverse()
        return page

    async def reactions(self, channel_id, message_id, emoji):
        authors = self.reaction_authors.get((channel_id, message_id, emoji), [])
        return [
            Reaction(emoji=emoji, channel_id=channel_id, message_id=message_id, author_id=a)
            for a in authors
        ]


def _plain_message(message_id, channel_id="10", author_id="1", **overrides):
    fields = dict(reaction_emoji=(), mentions=())
    fields.update(overrides)
    return make_message(message_id, channel_id, author_id, **fields)


@pytest.fixture
def api():
    fake = FakeRemoteApi()
    fake.member_list = [make_member("1"), make_member("2")]
    fake.channel_list = [make_channel("10", name="general")]
    return fake


@pytest.fixture
def mirror(store, api):
    return Mirror(store, api, GUILD.id)


# ---------------------------------------------------------------------------
# Guild validation
# ---------------------------------------------------------------------------


class TestValidateGuild:
    @pytest.mark.asyncio
    async def test_returns_matching_guild(self, mirror):
        assert await mirror.validate_guild() == GUILD

    @pytest.mark.asyncio
    async def test_missing_guild_raises_without_writes(self, store, api):
        api.guild_list = [Guild(id="5", name="Other")]
        mirror = Mirror(store, api, GUILD.id)
        reporter = MagicMock()

        with pytest.raises(GuildNotFoundError, match="Couldn't find guild with ID 0"):
            await mirror.update(reporter)

        assert await store.users() == []
        assert await store.channels() == []
        reporter.start.assert_not_called()


# ---------------------------------------------------------------------------
# Members and channels
# ---------------------------------------------------------------------------


class TestSyncMembersAndChannels:
    @pytest.mark.asyncio
    async def test_members_upserted(self, mirror, store):
        members = await mirror.sync_members()
        assert members == [make_member("1"), make_member("2")]
        assert await store.user("2") == make_user("2")

    @pytest.mark.asyncio
    async def test_departed_members_are_kept(self, mirror, api, store):
        await mirror.sync_members()
        api.member_list = [make_member("2")]
        members = await mirror.sync_members()
        assert [m.user.id for m in members] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_only_text_channels_stored(self, mirror, api, store):
        api.channel_list = [
            make_channel("10", name="general"),
            Channel(id="11", name="voice", type="GUILD_VOICE"),
            Channel(id="12", name="category", type="GUILD_CATEGORY"),
        ]
        channels = await mirror.sync_channels()
        assert [c.id for c in channels] == ["10"]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestSyncMessages:
    @pytest_asyncio.fixture
    async def prepared(self, mirror):
        await mirror.sync_members()
        await mirror.sync_channels()
        return mirror

    @pytest.mark.asyncio
    async def test_fresh_channel_starts_from_zero(self, prepared, api):
        api.channel_messages["10"] = [_plain_message("5"), _plain_message("6")]
        messages = await prepared.sync_messages("10", page_size=10)
        assert [m.id for m in messages] == ["5", "6"]
        assert api.message_calls == [("10", "0", 10)]

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, prepared, api):
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 8)]
        await prepared.sync_messages("10", page_size=3)
        assert [after for _, after, _ in api.message_calls] == ["0", "3", "6"]

    @pytest.mark.asyncio
    async def test_exact_multiple_needs_one_empty_page(self, prepared, api):
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 7)]
        await prepared.sync_messages("10", page_size=3)
        assert [after for _, after, _ in api.message_calls] == ["0", "3", "6"]

    @pytest.mark.asyncio
    async def test_cursor_advances_numerically(self, prepared, api):
        api.channel_messages["10"] = [_plain_message("9"), _plain_message("10")]
        await prepared.sync_messages("10", page_size=2)
        assert [after for _, after, _ in api.message_calls] == ["0", "10"]

    @pytest.mark.asyncio
    async def test_cursor_is_monotonic_for_newest_first_pages(self, prepared, api):
        api.newest_first = True
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 8)]

        messages = await prepared.sync_messages("10", page_size=3)

        assert [after for _, after, _ in api.message_calls] == ["0", "3", "6"]
        assert [m.id for m in messages] == [str(i) for i in range(1, 8)]

    @pytest.mark.asyncio
    async def test_small_channel_is_refetched_from_zero(self, prepared, api):
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 6)]
        await prepared.sync_messages("10", page_size=100, reload_window=50)
        api.message_calls.clear()

        await prepared.sync_messages("10", page_size=100, reload_window=50)

        assert api.message_calls == [("10", "0", 100)]

    @pytest.mark.asyncio
    async def test_resumes_inside_reload_window(self, prepared, api):
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 61)]
        await prepared.sync_messages("10", page_size=100, reload_window=50)
        api.message_calls.clear()

        messages = await prepared.sync_messages("10", page_size=100, reload_window=50)

        # 60 mirrored; the 50 newest (11..60) are reloaded.
        assert api.message_calls == [("10", "10", 100)]
        assert len(messages) == 60

    @pytest.mark.asyncio
    async def test_zero_reload_window_resumes_after_newest(self, prepared, api):
        api.channel_messages["10"] = [_plain_message(str(i)) for i in range(1, 4)]
        await prepared.sync_messages("10", page_size=100, reload_window=0)
        api.message_calls.clear()
        await prepared.sync_messages("10", page_size=100, reload_window=0)
        assert api.message_calls == [("10", "3", 100)]

    @pytest.mark.asyncio
    async def test_reactions_and_mentions_stored(self, prepared, api, store):
        emoji = custom_emoji()
        generic = Emoji(name="🐙")
        message = _plain_message("5", reaction_emoji=(emoji, generic), mentions=("2",))
        api.channel_messages["10"] = [message]
        api.reaction_authors[("10", "5", emoji)] = ["1", "2"]
        api.reaction_authors[("10", "5", generic)] = ["2"]

        messages = await prepared.sync_messages("10")

        assert messages == [message]
        assert await store.mentions("10", "5") == ["2"]
        assert [(r.emoji, r.author_id) for r in await store.reactions("10", "5")] == [
            (emoji, "1"),
            (emoji, "2"),
            (generic, "2"),
        ]

    @pytest.mark.asyncio
    async def test_reloaded_reactions_are_not_duplicated(self, prepared, api, store):
        emoji = custom_emoji()
        api.channel_messages["10"] = [_plain_message("5", reaction_emoji=(emoji,))]
        api.reaction_authors[("10", "5", emoji)] = ["1"]
        await prepared.sync_messages("10")

        api.reaction_authors[("10", "5", emoji)] = ["1", "2"]
        await prepared.sync_messages("10")

        assert [r.author_id for r in await store.reactions("10", "5")] == ["1", "2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs", [{"page_size": 0}, {"reload_window": -1}]
    )
    async def test_invalid_arguments(self, prepared, kwargs):
        with pytest.raises(ValueError):
            await prepared.sync_messages("10", **kwargs)


# ---------------------------------------------------------------------------
# Full update
# ---------------------------------------------------------------------------


class TestUpdate:
    @pytest.mark.asyncio
    async def test_full_run(self, mirror, api, store):
        api.channel_messages["10"] = [_plain_message("5"), _plain_message("6")]
        reporter = LoggingTaskReporter()

        summary = await mirror.update(reporter)

        assert summary.guild == GUILD
        assert (summary.members, summary.channels, summary.messages) == (2, 1, 2)
        assert summary.failed_channels == []
        assert mirror.state is SyncState.DONE
        assert mirror.channel_status == {"10": ChannelStatus.DONE}
        assert reporter.active_tasks == []
        assert await store.message_count("10") == 2

    @pytest.mark.asyncio
    async def test_reporter_labels_are_bracketed(self, mirror):
        reporter = MagicMock()
        await mirror.update(reporter)
        assert [c.args[0] for c in reporter.start.call_args_list] == [
            "discord/Test Guild",
            "discord/Test Guild/#general",
        ]
        assert [c.args[0] for c in reporter.finish.call_args_list] == [
            "discord/Test Guild/#general",
            "discord/Test Guild",
        ]

    @pytest.mark.asyncio
    async def test_failed_channel_does_not_stop_run(self, store, api):
        api.channel_list = [make_channel("10", name="broken"), make_channel("11", name="ok")]
        api.failing_channels = {"10"}
        api.channel_messages["11"] = [_plain_message("7", channel_id="11")]
        audit = MagicMock()
        audit.log = AsyncMock()
        mirror = Mirror(store, api, GUILD.id, audit=audit)
        reporter = LoggingTaskReporter()

        summary = await mirror.update(reporter)

        assert summary.failed_channels == ["10"]
        assert mirror.channel_status == {
            "10": ChannelStatus.FAILED,
            "11": ChannelStatus.DONE,
        }
        assert reporter.active_tasks == []
        assert await store.message_count("11") == 1

        outcomes = [
            (c.args[2]["channel_id"], c.kwargs["success"]) for c in audit.log.call_args_list
        ]
        assert outcomes == [("10", False), ("11", True)]
        assert "remote exploded" in audit.log.call_args_list[0].args[2]["error"]

    @pytest.mark.asyncio
    async def test_message_from_unknown_author_fails_channel(self, mirror, api):
        api.channel_messages["10"] = [_plain_message("5", author_id="77")]
        summary = await mirror.update(MagicMock())
        assert summary.failed_channels == ["10"]

    @pytest.mark.asyncio
    async def test_webhook_message_from_unknown_author_succeeds(self, mirror, api, store):
        api.channel_messages["10"] = [
            _plain_message("5", author_id="77", non_user_author=True)
        ]
        summary = await mirror.update(MagicMock())
        assert summary.failed_channels == []
        assert (await store.messages("10"))[0].non_user_author is True

    @pytest.mark.asyncio
    async def test_guild_task_finished_when_member_sync_fails(self, mirror, api):
        api.members = AsyncMock(side_effect=RuntimeError("members unavailable"))
        reporter = LoggingTaskReporter()

        with pytest.raises(RuntimeError, match="members unavailable"):
            await mirror.update(reporter)

        assert reporter.active_tasks == []
        assert mirror.state is SyncState.SYNCING_MEMBERS

    @pytest.mark.asyncio
    async def test_channel_task_finished_when_audit_fails(self, store, api):
        audit = MagicMock()
        audit.log = AsyncMock(side_effect=OSError("disk full"))
        mirror = Mirror(store, api, GUILD.id, audit=audit)
        reporter = LoggingTaskReporter()

        with pytest.raises(OSError):
            await mirror.update(reporter)

        assert reporter.active_tasks == []
