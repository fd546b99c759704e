# cogs/events.py

import discord
from discord.ext import commands
import logging

import config
from core.playback_manager import GuildPlaybackManager
from utils import voice_helpers

log = logging.getLogger('MusicBot.Cog.Events')


class EventsCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        if not isinstance(getattr(bot, 'playback_manager', None), GuildPlaybackManager):
            log.critical("EventsCog FATAL: bot.playback_manager not found or is not a GuildPlaybackManager!")
            raise RuntimeError("GuildPlaybackManager not initialized on Bot before loading EventsCog")
        self.playback_manager: GuildPlaybackManager = bot.playback_manager

    @commands.Cog.listener()
    async def on_ready(self):
        """Called once the bot is ready and operational."""
        log.info(f'Logged in as {self.bot.user.name} ({self.bot.user.id})')
        log.info(f"Using py-cord version {discord.__version__}")
        log.info(f"Command prefix: '{config.COMMAND_PREFIX}' | Default volume: {config.DEFAULT_VOLUME}% | Start attempts: {config.MAX_START_ATTEMPTS}")
        log.info(f"PyNaCl Available: {config.NACL_AVAILABLE}")
        log.info(f"Music Bot is operational. Monitoring {len(self.bot.guilds)} guilds.")

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
        """Tears down playback when the bot is left alone or is disconnected from voice."""
        guild = member.guild
        if not guild: return # Ignore DM voice states
        guild_id = guild.id

        # --- Bot's own state changes ---
        if self.bot.user and member.id == self.bot.user.id:
            if before.channel and after.channel is None and self.playback_manager.has_state(guild_id):
                log.info(f"EVENT: Bot was disconnected from {before.channel.name} in GID:{guild_id}. Cleaning up.")
                await self.playback_manager.on_voice_channel_vacant(guild_id)
            elif after.channel and before.channel != after.channel and voice_helpers.is_channel_vacant(after.channel):
                log.info(f"EVENT: Bot was moved into empty channel {after.channel.name} in GID:{guild_id}.")
                await self.playback_manager.on_voice_channel_vacant(guild_id)
            return

        # --- Someone left (or moved out of) the bot's channel ---
        if member.bot or before.channel is None or before.channel == after.channel:
            return
        vc = guild.voice_client
        if not vc or vc.channel != before.channel:
            return
        if voice_helpers.is_bot_alone(vc):
            log.info(f"EVENT: Last listener {member.display_name} left {before.channel.name} in GID:{guild_id}.")
            await self.playback_manager.on_voice_channel_vacant(guild_id)


def setup(bot: commands.Bot):
    bot.add_cog(EventsCog(bot))
    log.info("Events cog added successfully.")
