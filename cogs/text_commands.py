# cogs/text_commands.py

import discord
from discord.ext import commands
import logging

import config
from core.errors import PlaybackError
from core.playback_manager import GuildPlaybackManager
from utils import text_helpers, voice_helpers

log = logging.getLogger('MusicBot.Cog.TextCommands')


class TextCommandsCog(commands.Cog):
    """Prefix versions of the music commands (`!play`, `!skip`, ...)."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.playback_manager: GuildPlaybackManager = getattr(bot, 'playback_manager')

    async def cog_check(self, ctx: commands.Context) -> bool:
        return ctx.guild is not None # Music is per server, ignore DMs

    async def cog_command_error(self, ctx: commands.Context, error: Exception):
        if isinstance(error, (commands.CheckFailure, commands.CommandNotFound)):
            return
        if isinstance(error, commands.CommandOnCooldown):
            await ctx.reply(f"⏳ Slow down! Try again in {error.retry_after:.1f}s.")
            return
        if isinstance(error, commands.UserInputError):
            await ctx.reply(f"Usage: `{ctx.clean_prefix}{ctx.command.qualified_name} {ctx.command.signature}`")
            return
        original = getattr(error, 'original', error)
        if isinstance(original, PlaybackError):
            await ctx.reply(original.user_message)
            return
        log.error(f"Unhandled error in {ctx.clean_prefix}{ctx.command}: {original}", exc_info=original)
        await ctx.reply("❌ An internal error occurred.")

    @commands.command(name="ping")
    async def ping_text(self, ctx: commands.Context):
        await ctx.reply("Pong!")

    @commands.command(name="help")
    async def help_text(self, ctx: commands.Context):
        p = ctx.clean_prefix
        await ctx.reply(
            f"Commands: {p}play <query|url>, {p}skip, {p}stop, {p}queue, {p}now, "
            f"{p}loop <none|one|all>, {p}volume <{config.MIN_VOLUME}-{config.MAX_VOLUME}>, {p}remove <position>"
        )

    @commands.command(name="play")
    @commands.cooldown(1, 3, commands.BucketType.user)
    async def play_text(self, ctx: commands.Context, *, query: str = ""):
        if not query.strip():
            await ctx.reply(f"Usage: {ctx.clean_prefix}play <YouTube URL or search terms>")
            return
        log.info(f"COMMAND {ctx.clean_prefix}play invoked by {ctx.author.name} in GID:{ctx.guild.id}: '{query[:100]}'")
        async with ctx.typing():
            track, position = await self.playback_manager.play(
                ctx.guild.id, query, ctx.author.display_name, voice_helpers.member_voice_channel(ctx.author),
                requester_id=ctx.author.id, channel_id=ctx.channel.id,
            )
        if self.playback_manager.now_playing(ctx.guild.id) is track:
            await ctx.send(f"▶️ Starting: **{track.title}** <{track.source_ref}>")
        else:
            await ctx.send(f"✅ Queued: **{track.title}** <{track.source_ref}> (position {position})")

    @commands.command(name="skip")
    @commands.cooldown(1, 2, commands.BucketType.guild)
    async def skip_text(self, ctx: commands.Context):
        skipped = await self.playback_manager.skip(ctx.guild.id)
        await ctx.reply(f"⏭️ Skipped **{skipped.title}**." if skipped else "I'm not playing anything right now.")

    @commands.command(name="stop")
    async def stop_text(self, ctx: commands.Context):
        await self.playback_manager.stop(ctx.guild.id, reason=f"{ctx.clean_prefix}stop by {ctx.author.name}")
        await ctx.reply("⏹️ Stopped and left voice channel.")

    @commands.command(name="queue")
    async def queue_text(self, ctx: commands.Context):
        guild_id = ctx.guild.id
        listing = text_helpers.format_queue(self.playback_manager.peek_queue(guild_id), self.playback_manager.now_playing(guild_id))
        await ctx.reply(listing, allowed_mentions=discord.AllowedMentions.none())

    @commands.command(name="now")
    async def now_text(self, ctx: commands.Context):
        await ctx.reply(text_helpers.format_now_playing(self.playback_manager.now_playing(ctx.guild.id)))

    @commands.command(name="loop")
    async def loop_text(self, ctx: commands.Context, mode: str):
        new_mode = await self.playback_manager.set_loop_mode(ctx.guild.id, mode)
        await ctx.reply(text_helpers.format_loop_mode(new_mode))

    @commands.command(name="volume")
    async def volume_text(self, ctx: commands.Context, level: int):
        new_volume = await self.playback_manager.set_volume(ctx.guild.id, level)
        await ctx.reply(f"🔊 Volume set to **{new_volume}%**.")

    @commands.command(name="remove")
    async def remove_text(self, ctx: commands.Context, position: int):
        removed = await self.playback_manager.remove(ctx.guild.id, position)
        await ctx.reply(f"🗑️ Removed **{removed.title}** from position {position}.")


def setup(bot: commands.Bot):
    if not isinstance(getattr(bot, 'playback_manager', None), GuildPlaybackManager):
        log.critical("GuildPlaybackManager instance not found on the bot object. Text commands not loaded.")
        return
    bot.add_cog(TextCommandsCog(bot))
    log.info("Text commands cog added successfully.")
