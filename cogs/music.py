# -*- coding: utf-8 -*-
import discord
import shutil
from discord.ext import commands
import logging
from typing import Optional

import config
from core.errors import NoActiveState, PlaybackError, SinkStartFailure
from core.music_types import LoopMode, Track
from core.playback_manager import GuildPlaybackManager
from utils import text_helpers, voice_helpers

log = logging.getLogger('MusicBot.Cog.Music')

CONTROLS_TIMEOUT_SECONDS = 3600 # Buttons stop responding after an hour


async def _try_respond(interaction: discord.Interaction, message: Optional[str] = None, **kwargs):
    """Helper to respond to an interaction, catching errors if it already expired/responded."""
    if not interaction: return
    content = kwargs.pop('content', message)
    is_ephemeral = kwargs.pop('ephemeral', False)
    try:
        if interaction.response.is_done():
            await interaction.followup.send(content=content, ephemeral=is_ephemeral, **kwargs)
        else:
            await interaction.response.send_message(content=content, ephemeral=is_ephemeral, **kwargs)
    except discord.NotFound:
        log.warning(f"Interaction response failed (NotFound): {interaction.id}")
    except discord.HTTPException as e:
        log.warning(f"Interaction response failed (HTTPException {e.status} / {e.code}): {interaction.id}")


def build_track_embed(track: Track, heading: str, color: discord.Color, footer: Optional[str] = None) -> discord.Embed:
    embed = discord.Embed(title=text_helpers.truncate(f"{heading}: {track.title}", 256), url=track.source_ref, color=color)
    embed.add_field(name="Channel", value=track.uploader or "Unknown Uploader", inline=True)
    embed.add_field(name="Duration", value=track.duration_str, inline=True)
    embed.set_footer(text=footer or f"Requested by {track.requested_by}")
    if track.thumbnail:
        embed.set_thumbnail(url=track.thumbnail)
    return embed


# --- Player Controls View ---
class PlayerControlsView(discord.ui.View):
    """Skip / Stop / Loop buttons attached to "now playing" messages."""

    def __init__(self, guild_id: int, playback_manager: GuildPlaybackManager, *, timeout: Optional[float] = CONTROLS_TIMEOUT_SECONDS):
        super().__init__(timeout=timeout)
        self.guild_id = guild_id
        self.playback_manager = playback_manager
        self.message: Optional[discord.Message] = None

        for label, emoji, style, callback in (
            ("Skip", "⏭️", discord.ButtonStyle.primary, self.skip_callback),
            ("Stop", "⏹️", discord.ButtonStyle.danger, self.stop_callback),
            ("Loop", "🔁", discord.ButtonStyle.secondary, self.loop_callback),
        ):
            button = discord.ui.Button(label=label, emoji=emoji, style=style, custom_id=f"player_{label.lower()}:{guild_id}")
            button.callback = callback
            self.add_item(button)

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.guild_id != self.guild_id:
            return False
        bot_vc = interaction.guild.voice_client if interaction.guild else None
        user_channel = voice_helpers.member_voice_channel(interaction.user)
        if bot_vc and user_channel != bot_vc.channel:
            await _try_respond(interaction, "✋ Join my voice channel to use the player controls.", ephemeral=True)
            return False
        return True

    async def skip_callback(self, interaction: discord.Interaction):
        log.info(f"CONTROLS: Skip clicked by {interaction.user.name} in GID:{self.guild_id}")
        try:
            skipped = await self.playback_manager.skip(self.guild_id)
        except PlaybackError as e:
            await _try_respond(interaction, e.user_message, ephemeral=True)
            return
        if skipped:
            await _try_respond(interaction, f"⏭️ {interaction.user.display_name} skipped **{skipped.title}**.")
        else:
            await _try_respond(interaction, "I'm not playing anything right now.", ephemeral=True)

    async def stop_callback(self, interaction: discord.Interaction):
        log.info(f"CONTROLS: Stop clicked by {interaction.user.name} in GID:{self.guild_id}")
        await self.playback_manager.stop(self.guild_id, reason=f"stop button ({interaction.user.name})")
        self.disable_all_items()
        self.stop()
        try:
            await interaction.response.edit_message(view=self)
        except discord.HTTPException as e:
            log.warning(f"Failed to disable player controls for GID:{self.guild_id}: {e}")
        await _try_respond(interaction, f"⏹️ {interaction.user.display_name} stopped playback and cleared the queue.")

    async def loop_callback(self, interaction: discord.Interaction):
        current_mode = self.playback_manager.loop_mode(self.guild_id)
        if current_mode is None:
            await _try_respond(interaction, NoActiveState().user_message, ephemeral=True)
            return
        try:
            new_mode = await self.playback_manager.set_loop_mode(self.guild_id, current_mode.next())
        except PlaybackError as e:
            await _try_respond(interaction, e.user_message, ephemeral=True)
            return
        await _try_respond(interaction, text_helpers.format_loop_mode(new_mode))

    async def on_timeout(self):
        if self.message:
            self.disable_all_items()
            try:
                await self.message.edit(view=self)
            except discord.HTTPException as e:
                log.debug(f"Failed to edit expired player controls {self.message.id}: {e}")


# --- Music Cog ---
class MusicCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        if not hasattr(bot, 'playback_manager'):
            log.critical("GuildPlaybackManager not found on bot. MusicCog requires it to be initialized first.")
            raise RuntimeError("GuildPlaybackManager not found on bot.")
        self.playback_manager: GuildPlaybackManager = bot.playback_manager
        self.playback_manager.on_track_start = self.announce_track_start
        self.playback_manager.on_track_failure = self.announce_track_failure

    def cog_unload(self):
        self.playback_manager.on_track_start = None
        self.playback_manager.on_track_failure = None
        log.info("MusicCog unloaded, playback announcements detached.")

    def _announce_channel(self, track: Track) -> Optional[discord.abc.Messageable]:
        if not track.channel_id:
            return None
        return self.bot.get_channel(track.channel_id)

    async def announce_track_start(self, guild_id: int, track: Track):
        channel = self._announce_channel(track)
        if channel is None:
            return
        view = PlayerControlsView(guild_id, self.playback_manager)
        embed = build_track_embed(track, "Now Playing", discord.Color.blurple())
        try:
            view.message = await channel.send(embed=embed, view=view)
        except discord.HTTPException as e:
            log.warning(f"Could not announce '{track.title[:50]}' in GID:{guild_id}: {e}")

    async def announce_track_failure(self, guild_id: int, track: Track, error: SinkStartFailure, stalled: bool):
        channel = self._announce_channel(track)
        if channel is None:
            log.warning(f"Playback failure in GID:{guild_id} for '{track.title[:50]}' with nowhere to report it.")
            return
        message = f"{track.requester_mention} {error.user_message}"
        if stalled:
            message += "\nPlayback paused after repeated failures. Use `/play` or `/skip` to try again."
        else:
            message += " Skipped it."
        try:
            await channel.send(message)
        except discord.HTTPException as e:
            log.warning(f"Could not report playback failure in GID:{guild_id}: {e}")

    async def cog_command_error(self, ctx: discord.ApplicationContext, error: Exception):
        if isinstance(error, commands.CommandOnCooldown):
            await ctx.respond(f"⏳ Slow down! Try again in {error.retry_after:.1f}s.", ephemeral=True)
            return
        original = getattr(error, 'original', error)
        if isinstance(original, PlaybackError):
            await ctx.respond(original.user_message, ephemeral=True)
            return
        log.error(f"Unhandled error in /{ctx.command.qualified_name if ctx.command else '?'}: {original}", exc_info=original)
        try:
            await ctx.respond("❌ An internal error occurred.", ephemeral=True)
        except discord.HTTPException:
            pass

    # --- Slash Commands ---

    @commands.slash_command(name="play", description="Adds a song to the queue from a URL or search.")
    @commands.cooldown(1, 3, commands.BucketType.user) # Cooldown per user
    async def play(
        self,
        ctx: discord.ApplicationContext,
        query: discord.Option(str, description="YouTube URL or search term(s)", required=True)
    ):
        """Adds a song to the queue."""
        await ctx.defer() # Defer response as extraction can take time
        guild = ctx.guild
        user = ctx.author
        if not guild:
            await ctx.followup.send("This command must be used in a server.", ephemeral=True); return

        log.info(f"COMMAND /play invoked by {user.name} in GID:{guild.id}: '{query[:100]}'")
        try:
            track, position = await self.playback_manager.play(
                guild.id, query, user.display_name, voice_helpers.member_voice_channel(user),
                requester_id=user.id, channel_id=ctx.channel_id,
            )
        except PlaybackError as e:
            await ctx.followup.send(e.user_message, ephemeral=True)
            return

        if self.playback_manager.now_playing(guild.id) is track:
            embed = build_track_embed(track, "Starting", discord.Color.green())
        else:
            embed = build_track_embed(track, "Queued", discord.Color.green(), footer=f"Requested by {user.display_name} | Position: {position}")
        await ctx.followup.send(embed=embed)

    @commands.slash_command(name="skip", description="Skips the currently playing song.")
    @commands.cooldown(1, 2, commands.BucketType.guild) # Cooldown per guild
    async def skip(self, ctx: discord.ApplicationContext):
        """Skips the current song."""
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        log.info(f"COMMAND /skip invoked by {ctx.author.name} in GID:{ctx.guild.id}")
        try:
            skipped = await self.playback_manager.skip(ctx.guild.id)
        except PlaybackError as e:
            await ctx.respond(e.user_message, ephemeral=True); return
        if skipped:
            await ctx.respond(f"⏭️ Skipped **{skipped.title}**.")
        else:
            await ctx.respond("I'm not playing anything right now.", ephemeral=True)

    @commands.slash_command(name="stop", description="Stops playback, clears the queue, and leaves the channel.")
    @commands.cooldown(1, 5, commands.BucketType.guild)
    async def stop(self, ctx: discord.ApplicationContext):
        """Stops music, clears queue, leaves VC."""
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        log.info(f"COMMAND /stop invoked by {ctx.author.name} in GID:{ctx.guild.id}")
        await ctx.defer()
        await self.playback_manager.stop(ctx.guild.id, reason=f"/stop by {ctx.author.name}")
        await ctx.followup.send("⏹️ Playback stopped, queue cleared, and I left the channel.")

    @commands.slash_command(name="queue", description="Shows the current music queue.")
    @commands.cooldown(1, 5, commands.BucketType.user)
    async def queue(self, ctx: discord.ApplicationContext):
        """Displays the song queue."""
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        guild_id = ctx.guild.id
        queue_list = self.playback_manager.peek_queue(guild_id)
        current = self.playback_manager.now_playing(guild_id)
        if queue_list is None:
            await ctx.respond(NoActiveState().user_message, ephemeral=True); return

        embed = discord.Embed(title="Music Queue", color=discord.Color.blurple())
        embed.description = text_helpers.format_queue(queue_list, current)
        total_songs = len(queue_list) + (1 if current else 0)
        embed.set_footer(text=f"Total songs: {total_songs} | {text_helpers.format_loop_mode(self.playback_manager.loop_mode(guild_id))} | Volume: {self.playback_manager.volume(guild_id)}%")
        await ctx.respond(embed=embed, ephemeral=True)

    @commands.slash_command(name="now", description="Shows the song that is playing right now.")
    async def now(self, ctx: discord.ApplicationContext):
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        current = self.playback_manager.now_playing(ctx.guild.id)
        if current is None:
            await ctx.respond("Nothing is playing.", ephemeral=True); return
        view = PlayerControlsView(ctx.guild.id, self.playback_manager)
        interaction = await ctx.respond(embed=build_track_embed(current, "Now Playing", discord.Color.blurple()), view=view)
        if isinstance(interaction, discord.Interaction):
            view.message = await interaction.original_response()
        else:
            view.message = interaction

    @commands.slash_command(name="loop", description="Sets the loop mode.")
    async def loop(
        self,
        ctx: discord.ApplicationContext,
        mode: discord.Option(str, description="none, one (current track) or all (whole queue)", choices=[m.value for m in LoopMode], required=True)
    ):
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        try:
            new_mode = await self.playback_manager.set_loop_mode(ctx.guild.id, mode)
        except PlaybackError as e:
            await ctx.respond(e.user_message, ephemeral=True); return
        await ctx.respond(text_helpers.format_loop_mode(new_mode))

    @commands.slash_command(name="volume", description="Sets the playback volume (0-200%).")
    async def volume(
        self,
        ctx: discord.ApplicationContext,
        level: discord.Option(int, description="Volume in percent", min_value=config.MIN_VOLUME, max_value=config.MAX_VOLUME, required=True)
    ):
        if not ctx.guild:
            await ctx.respond("This command must be used in a server.", ephemeral=True); return
        try:
            new_volume = await self.playback_manager.set_volume(ctx.guild.id, level)
        except PlaybackError as e:
            await ctx.respond(e.user_message, ephemeral=True); return
        await ctx.respond(f"🔊 Volume set to **{new_volume}%**.")

    @commands.slash_command(name="remove", description="Removes a song from the queue by its position.")
    @commands.cooldown(1, 2, commands.BucketType.user)
    async def remove(
        self,
        ctx: discord.ApplicationContext,
        position: discord.Option(int, description="The queue position number to remove (from /queue)", required=True, min_value=1)
    ):
        if not ctx.guild:
            await ctx.respond("Use in server.", ephemeral=True); return
        try:
            removed = await self.playback_manager.remove(ctx.guild.id, position)
        except PlaybackError as e:
            await ctx.respond(e.user_message, ephemeral=True); return
        log.info(f"COMMAND /remove: User {ctx.author.name} removed '{removed.title}' (position {position}) from GID:{ctx.guild.id}")
        await ctx.respond(f"🗑️ Removed **{removed.title}** from position {position}.")


# --- Setup Function ---
def setup(bot: commands.Bot):
    """Loads the Music Cog."""
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        log.warning("Music Cog: 'ffmpeg' executable not found in PATH. Playback will fail.")
    else:
        log.info(f"Music Cog: Found ffmpeg executable at: {ffmpeg_path}")

    if not isinstance(getattr(bot, 'playback_manager', None), GuildPlaybackManager):
        log.critical("GuildPlaybackManager instance not found on the bot object ('bot.playback_manager'). Cog not loaded.")
        return
    bot.add_cog(MusicCog(bot))
    log.info("Music Cog added successfully.")
