"""Tests for the prefix command cog, with the context and manager mocked out."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
from discord.ext import commands

from cogs.text_commands import TextCommandsCog
from core.errors import NoActiveState
from core.playback_manager import GuildPlaybackManager
from fakes import make_track

GUILD = 1


@pytest.fixture()
def playback_manager():
    manager = MagicMock(spec=GuildPlaybackManager)
    manager.play = AsyncMock()
    manager.set_volume = AsyncMock()
    return manager


@pytest.fixture()
def cog(playback_manager):
    return TextCommandsCog(SimpleNamespace(playback_manager=playback_manager))


@pytest.fixture()
def ctx():
    context = MagicMock()
    context.reply = AsyncMock()
    context.send = AsyncMock()
    context.clean_prefix = "!"
    context.guild = SimpleNamespace(id=GUILD)
    context.channel = SimpleNamespace(id=7)
    author = MagicMock(spec=discord.Member)
    author.id = 3
    author.name = "alice"
    author.display_name = "Alice"
    author.voice = SimpleNamespace(channel=SimpleNamespace(name="General"))
    context.author = author
    return context


@pytest.mark.asyncio
async def test_ping(cog, ctx):
    await TextCommandsCog.ping_text.callback(cog, ctx)
    ctx.reply.assert_awaited_once_with("Pong!")


@pytest.mark.asyncio
async def test_help_lists_commands_with_prefix(cog, ctx):
    await TextCommandsCog.help_text.callback(cog, ctx)

    text = ctx.reply.call_args.args[0]
    for name in ("!play", "!skip", "!stop", "!queue", "!now", "!loop", "!volume", "!remove"):
        assert name in text
    assert "0-200" in text


@pytest.mark.asyncio
async def test_ignores_direct_messages(cog, ctx):
    assert await cog.cog_check(ctx) is True
    ctx.guild = None
    assert await cog.cog_check(ctx) is False


@pytest.mark.asyncio
async def test_playback_error_becomes_reply(cog, ctx):
    await cog.cog_command_error(ctx, commands.CommandInvokeError(NoActiveState()))
    ctx.reply.assert_awaited_once_with(NoActiveState.default_message)


@pytest.mark.asyncio
async def test_check_failure_is_silent(cog, ctx):
    await cog.cog_command_error(ctx, commands.CheckFailure())
    ctx.reply.assert_not_awaited()


@pytest.mark.asyncio
async def test_unexpected_error_gets_generic_reply(cog, ctx):
    await cog.cog_command_error(ctx, commands.CommandInvokeError(RuntimeError("boom")))
    ctx.reply.assert_awaited_once_with("❌ An internal error occurred.")


@pytest.mark.asyncio
async def test_play_reports_queue_position(cog, ctx, playback_manager):
    track = make_track("lofi")
    playback_manager.play.return_value = (track, 2)
    playback_manager.now_playing.return_value = make_track("other")

    await TextCommandsCog.play_text.callback(cog, ctx, query="lofi")

    playback_manager.play.assert_awaited_once()
    assert playback_manager.play.call_args.kwargs == {"requester_id": 3, "channel_id": 7}
    assert "Queued: **lofi**" in ctx.send.call_args.args[0]
    assert "(position 2)" in ctx.send.call_args.args[0]


@pytest.mark.asyncio
async def test_play_without_query_shows_usage(cog, ctx, playback_manager):
    await TextCommandsCog.play_text.callback(cog, ctx, query="  ")

    playback_manager.play.assert_not_awaited()
    assert ctx.reply.call_args.args[0].startswith("Usage: !play")


@pytest.mark.asyncio
async def test_volume(cog, ctx, playback_manager):
    playback_manager.set_volume.return_value = 150

    await TextCommandsCog.volume_text.callback(cog, ctx, 150)

    playback_manager.set_volume.assert_awaited_once_with(GUILD, 150)
    ctx.reply.assert_awaited_once_with("🔊 Volume set to **150%**.")
