# core/audio_sink.py

import abc
import asyncio
import logging
import threading
from enum import Enum, auto
from functools import partial
from typing import Callable, Optional

import discord
import yt_dlp

import config
from core.errors import SinkStartFailure
from core.music_types import Track

log = logging.getLogger('MusicBot.AudioSink')

FFMPEG_BEFORE_OPTIONS = getattr(config, 'FFMPEG_BEFORE_OPTIONS', '-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5')
FFMPEG_OPTIONS = getattr(config, 'FFMPEG_OPTIONS', '-vn')
VOICE_CONNECT_TIMEOUT = getattr(config, 'VOICE_CONNECT_TIMEOUT', 30.0)


class SessionOutcome(Enum):
    COMPLETED = auto()
    CANCELLED = auto()


class PlaybackSession:
    """One attempt at streaming a track. Emits exactly one terminal outcome."""

    def __init__(self, track: Track):
        self.track = track
        self.cancel_requested = False
        self.outcome: Optional[SessionOutcome] = None
        self._on_end: Optional[Callable[["PlaybackSession", SessionOutcome], None]] = None
        self._lock = threading.Lock()

    def bind(self, on_end: Callable[["PlaybackSession", SessionOutcome], None]):
        self._on_end = on_end

    @property
    def ended(self) -> bool:
        return self.outcome is not None

    def finish(self, outcome: Optional[SessionOutcome] = None) -> bool:
        """Delivers the terminal signal. Later calls are ignored. May run on any thread."""
        with self._lock:
            if self.outcome is not None:
                return False
            if outcome is None:
                outcome = SessionOutcome.CANCELLED if self.cancel_requested else SessionOutcome.COMPLETED
            self.outcome = outcome
        log.debug(f"Session for '{self.track.title[:50]}' ended: {outcome.name}")
        if self._on_end:
            self._on_end(self, outcome)
        return True


class AudioSink(abc.ABC):
    """Playback device for a single guild. Owns that guild's voice connection."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool: ...

    @abc.abstractmethod
    async def start(self, track: Track, volume: int, on_end: Callable[[PlaybackSession, SessionOutcome], None]) -> PlaybackSession:
        """Starts streaming `track`. Raises SinkStartFailure if it cannot."""

    @abc.abstractmethod
    def stop(self, session: PlaybackSession): ...

    @abc.abstractmethod
    def set_volume(self, volume: int): ...

    @abc.abstractmethod
    async def release(self): ...


class VoiceClientSink(AudioSink):
    """AudioSink streaming through a py-cord VoiceClient via FFmpeg."""

    def __init__(self, voice_client: discord.VoiceClient):
        self.voice_client = voice_client
        self.session: Optional[PlaybackSession] = None

    @property
    def guild_id(self) -> Optional[int]:
        guild = getattr(self.voice_client, 'guild', None)
        return guild.id if guild else None

    @property
    def is_connected(self) -> bool:
        return bool(self.voice_client and self.voice_client.is_connected())

    async def _extract_stream_url(self, track: Track) -> str:
        """Fetches a fresh direct stream URL; these expire, so it is done at start time."""
        opts = dict(getattr(config, 'YTDL_OPTS', {}))
        opts['noplaylist'] = True
        loop = asyncio.get_running_loop()
        try:
            ydl = yt_dlp.YoutubeDL(opts)
            info = await loop.run_in_executor(None, partial(ydl.extract_info, track.source_ref, download=False))
        except yt_dlp.utils.DownloadError as e:
            raise SinkStartFailure(f"❌ Could not load **{track.title}**: {e}") from e
        if info and 'entries' in info:
            entries = [entry for entry in info['entries'] if entry]
            info = entries[0] if entries else None
        stream_url = info.get('url') if info else None
        if not stream_url:
            raise SinkStartFailure(f"❌ No playable stream found for **{track.title}**.")
        return stream_url

    async def start(self, track: Track, volume: int, on_end: Callable[[PlaybackSession, SessionOutcome], None]) -> PlaybackSession:
        if not self.is_connected:
            raise SinkStartFailure("❌ I'm no longer connected to a voice channel.")

        stream_url = await self._extract_stream_url(track)
        try:
            source = discord.PCMVolumeTransformer(
                discord.FFmpegPCMAudio(stream_url, before_options=FFMPEG_BEFORE_OPTIONS, options=FFMPEG_OPTIONS),
                volume=volume / 100,
            )
        except discord.ClientException as e:
            log.error(f"GID:{self.guild_id} - Failed to create FFmpeg source for '{track.title[:50]}': {e}")
            raise SinkStartFailure(f"❌ Could not start **{track.title}**: {e}") from e

        session = PlaybackSession(track)
        session.bind(on_end)

        def after_play(error: Optional[Exception]):
            # Runs on the voice client's audio thread.
            if error:
                log.error(f"GID:{self.guild_id} - Playback error for '{track.title[:50]}': {error}", exc_info=error)
            session.finish()

        try:
            if self.session and not self.session.ended:
                self.stop(self.session)
            self.voice_client.play(source, after=after_play)
        except discord.ClientException as e:
            source.cleanup()
            raise SinkStartFailure(f"❌ Could not start **{track.title}**: {e}") from e
        self.session = session
        log.info(f"GID:{self.guild_id} - Streaming '{track.title[:50]}' at volume {volume}%")
        return session

    def stop(self, session: PlaybackSession):
        session.cancel_requested = True
        if session is self.session and self.voice_client and (self.voice_client.is_playing() or self.voice_client.is_paused()):
            self.voice_client.stop() # after_play fires and reports CANCELLED
        else:
            session.finish(SessionOutcome.CANCELLED)
        if session is self.session:
            self.session = None

    def set_volume(self, volume: int):
        source = getattr(self.voice_client, 'source', None)
        if isinstance(source, discord.PCMVolumeTransformer):
            source.volume = volume / 100
            log.debug(f"GID:{self.guild_id} - Live volume set to {volume}%")

    async def release(self):
        if self.session:
            self.stop(self.session)
        if self.voice_client and self.voice_client.is_connected():
            try:
                await self.voice_client.disconnect(force=False)
                log.info(f"GID:{self.guild_id} - Disconnected from voice.")
            except Exception as e:
                log.error(f"GID:{self.guild_id} - Error during voice client disconnect: {e}", exc_info=True)
        else:
            log.debug(f"GID:{self.guild_id} - Already disconnected before release.")


async def connect_voice_sink(channel: discord.VoiceChannel) -> Optional[VoiceClientSink]:
    """
    Connects to (or moves to) `channel` and wraps the voice client in a sink.
    Returns None when the bot lacks permissions or the connection fails.
    """
    guild = channel.guild
    guild_id = guild.id
    my_perms = channel.permissions_for(guild.me)
    if not my_perms.connect or not my_perms.speak:
        log.warning(f"Connect: Missing Connect/Speak permissions in {channel.name} (GID:{guild_id})")
        return None

    current_vc = guild.voice_client
    try:
        if current_vc and current_vc.is_connected():
            if current_vc.channel != channel:
                log.info(f"Connect: Moving from {current_vc.channel.name} to {channel.name} (GID:{guild_id})")
                await current_vc.move_to(channel)
            return VoiceClientSink(current_vc)
        log.info(f"Connect: Connecting to {channel.name} (GID:{guild_id})")
        vc = await channel.connect(timeout=VOICE_CONNECT_TIMEOUT, reconnect=True)
        return VoiceClientSink(vc)
    except asyncio.TimeoutError:
        log.error(f"Connect: Timeout connecting to {channel.name} (GID:{guild_id})")
    except discord.ClientException as e:
        log.error(f"Connect: ClientException connecting to {channel.name} (GID:{guild_id}): {e}")
    except discord.DiscordException as e:
        log.error(f"Connect: Error connecting to {channel.name} (GID:{guild_id}): {e}", exc_info=True)
    return None
