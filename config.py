# -*- coding: utf-8 -*-
import os
from dotenv import load_dotenv

load_dotenv() # Load environment variables from .env file


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


# --- Core Settings ---
BOT_TOKEN = os.getenv('BOT_TOKEN')
COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!') # Prefix for text commands
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# --- Playback ---
DEFAULT_VOLUME = _env_int('DEFAULT_VOLUME', 100) # Percent
MIN_VOLUME = 0
MAX_VOLUME = 200
MAX_START_ATTEMPTS = _env_int('MAX_START_ATTEMPTS', 3) # Consecutive failed starts before giving up
MAX_QUEUE_DISPLAY = 10 # Tracks listed by the queue command

# --- Voice Channel Behavior ---
VOICE_CONNECT_TIMEOUT = 30.0 # Seconds

# --- yt-dlp / FFmpeg ---
YTDL_MAX_DURATION = _env_int('YTDL_MAX_DURATION', 0) # Max duration in seconds, 0 = unlimited

YTDL_OPTS = {
    'format': 'bestaudio/best',
    'noplaylist': True,
    'nocheckcertificate': True,
    'ignoreerrors': False,
    'logtostderr': False,
    'quiet': True,
    'no_warnings': True,
    'default_search': 'ytsearch1', # Search YouTube and return 1 result
    'source_address': '0.0.0.0', # Bind to all interfaces to avoid connection issues
}

# Streams are read directly from the remote URL, reconnect on drops
FFMPEG_BEFORE_OPTIONS = '-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5'
FFMPEG_OPTIONS = '-vn'

# Check for essential libraries during startup
NACL_AVAILABLE = False
try:
    import nacl
    NACL_AVAILABLE = True
except ImportError: pass
