# -*- coding: utf-8 -*-
import discord
from discord.ext import commands
import ctypes.util
import logging
import platform
import sys

# --- Import Core Components ---
import config # Bot config and constants
from core.audio_sink import connect_voice_sink
from core.playback_manager import GuildPlaybackManager # Handles per-guild queues and playback
from core.track_resolver import YtdlTrackResolver

log = logging.getLogger('MusicBot.Main')

COGS = ['events', 'music', 'text_commands']


def setup_logging(level: str = config.LOG_LEVEL):
    log_formatter = logging.Formatter('%(asctime)s:%(levelname)s:%(name)s: %(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)
    logging.getLogger('discord').setLevel(logging.WARNING) # Reduce discord lib noise
    logging.getLogger('MusicBot').setLevel(level)


def load_opus() -> bool:
    """Makes sure libopus is available for voice. Returns True when loaded."""
    if discord.opus.is_loaded():
        return True
    found_path = ctypes.util.find_library('opus')
    for candidate in filter(None, (found_path, 'opus')):
        try:
            discord.opus.load_opus(candidate)
        except OSError:
            continue
        if discord.opus.is_loaded():
            log.info(f"Successfully loaded Opus library: {candidate}")
            return True
    log.error("❌ FAILED to load the Opus library. Voice playback will not work.")
    return False


class MusicBot(commands.Bot):
    """Bot carrying the playback registry the cogs share."""

    def __init__(self, playback_manager: GuildPlaybackManager, **kwargs):
        super().__init__(**kwargs)
        self.playback_manager = playback_manager
        self.config = config # Make config easily accessible

    async def close(self):
        log.info("Shutting down: stopping playback in all guilds.")
        await self.playback_manager.shutdown()
        await super().close()


def build_bot() -> MusicBot:
    # --- Bot Intents ---
    intents = discord.Intents.default()
    intents.voice_states = True # Needed for occupancy checks
    intents.guilds = True
    intents.message_content = True # Needed for prefix commands
    intents.members = True # Needed to check channel members accurately

    playback_manager = GuildPlaybackManager(YtdlTrackResolver(), connect_voice_sink)
    bot = MusicBot(playback_manager, command_prefix=config.COMMAND_PREFIX, intents=intents, help_command=None)
    log.info("GuildPlaybackManager initialized.")

    loaded_cogs = 0
    for cog_name in COGS:
        cog_path = f"cogs.{cog_name}"
        try:
            bot.load_extension(cog_path)
            log.info(f"Successfully loaded Cog: {cog_path}")
            loaded_cogs += 1
        except discord.errors.ExtensionNotFound:
            log.error(f"Cog not found: {cog_path}. Skipping.")
        except discord.errors.ExtensionAlreadyLoaded:
            log.warning(f"Cog already loaded: {cog_path}. Skipping.")
        except Exception as e:
            log.error(f"Failed to load Cog {cog_path}: {e}", exc_info=True)
    log.info(f"Finished loading Cogs ({loaded_cogs}/{len(COGS)} successful).")
    return bot


def main():
    setup_logging()
    if not config.BOT_TOKEN:
        log.critical("CRITICAL ERROR: BOT_TOKEN missing. Set it in your environment or .env file. Exiting.")
        sys.exit(1)
    if not config.NACL_AVAILABLE:
        log.critical("CRITICAL: PyNaCl library not found. Voice WILL NOT WORK. Install: pip install PyNaCl")
        sys.exit(1)
    load_opus()

    bot = build_bot()
    log.info(f"Starting Bot (Python {platform.python_version()}, py-cord {discord.__version__})")
    try:
        bot.run(config.BOT_TOKEN)
    except discord.errors.LoginFailure:
        log.critical("CRITICAL STARTUP ERROR: Login Failure - Invalid BOT_TOKEN.")
    except discord.errors.PrivilegedIntentsRequired as e:
        log.critical(f"CRITICAL STARTUP ERROR: Missing Privileged Intents: {e}. Enable in Dev Portal.")
    finally:
        log.info("Bot process has ended.")


if __name__ == "__main__":
    main()
