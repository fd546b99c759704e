import asyncio
import logging
from collections import defaultdict
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Tuple

# Local application imports
import config
from core.audio_sink import AudioSink, PlaybackSession, SessionOutcome
from core.errors import (
    InvalidLoopMode,
    InvalidQueuePosition,
    InvalidVolume,
    NoActiveState,
    NoResolutionResult,
    NotInVoiceChannel,
    SinkStartFailure,
    VoiceConnectionFailed,
)
from core.music_types import GuildPlaybackState, LoopMode, Track

log = logging.getLogger('MusicBot.PlaybackManager')

DEFAULT_VOLUME = getattr(config, 'DEFAULT_VOLUME', 100)
MIN_VOLUME = getattr(config, 'MIN_VOLUME', 0)
MAX_VOLUME = getattr(config, 'MAX_VOLUME', 200)
MAX_START_ATTEMPTS = getattr(config, 'MAX_START_ATTEMPTS', 3)

SinkFactory = Callable[[Any], Awaitable[Optional[AudioSink]]]
TrackListener = Callable[[int, Track], Awaitable[None]]
FailureListener = Callable[[int, Track, SinkStartFailure, bool], Awaitable[None]]


class GuildPlaybackManager:
    """
    Owns one GuildPlaybackState per guild: queue, current track, loop mode,
    volume and the guild's AudioSink (its voice connection).

    Every mutation of a guild's state runs under that guild's lock, so
    enqueue/advance/skip/stop and session-end handling never interleave for
    the same guild. Different guilds never wait on each other.
    """

    def __init__(
        self,
        resolver: Any,
        sink_factory: SinkFactory,
        *,
        max_start_attempts: int = MAX_START_ATTEMPTS,
        default_volume: int = DEFAULT_VOLUME,
        min_volume: int = MIN_VOLUME,
        max_volume: int = MAX_VOLUME,
    ):
        self.resolver = resolver
        self.sink_factory = sink_factory
        self.max_start_attempts = max(1, max_start_attempts)
        self.default_volume = default_volume
        self.min_volume = min_volume
        self.max_volume = max_volume
        self.guild_states: Dict[int, GuildPlaybackState] = {}
        self.guild_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Optional coroutine hooks, installed by the command layer
        self.on_track_start: Optional[TrackListener] = None
        self.on_track_failure: Optional[FailureListener] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- Read-only accessors ---

    def has_state(self, guild_id: int) -> bool:
        return guild_id in self.guild_states

    def peek_queue(self, guild_id: int) -> Optional[List[Track]]:
        """Upcoming tracks in play order. None means the guild has no playback state at all."""
        state = self.guild_states.get(guild_id)
        return list(state.queue) if state else None

    def now_playing(self, guild_id: int) -> Optional[Track]:
        state = self.guild_states.get(guild_id)
        return state.current if state else None

    def is_playing(self, guild_id: int) -> bool:
        state = self.guild_states.get(guild_id)
        return bool(state and state.playing)

    def loop_mode(self, guild_id: int) -> Optional[LoopMode]:
        state = self.guild_states.get(guild_id)
        return state.loop_mode if state else None

    def volume(self, guild_id: int) -> Optional[int]:
        state = self.guild_states.get(guild_id)
        return state.volume if state else None

    def _require_state(self, guild_id: int) -> GuildPlaybackState:
        state = self.guild_states.get(guild_id)
        if state is None:
            raise NoActiveState()
        return state

    # --- Commands ---

    async def play(self, guild_id: int, query: str, requested_by: str, voice_channel: Any, **meta) -> Tuple[Track, int]:
        """
        Resolves `query` and enqueues the result. Returns (track, queue position).
        Raises SinkStartFailure when the track was due to start right away and could not.
        """
        if voice_channel is None:
            raise NotInVoiceChannel()
        # Network lookup happens outside the guild lock
        track = await self.resolver.resolve(query, requested_by, **meta)
        if track is None:
            log.info(f"PLAY: GID {guild_id} - No results for '{query[:100]}'")
            raise NoResolutionResult(query)
        position = await self.enqueue(guild_id, track, voice_channel)
        return track, position

    async def enqueue(self, guild_id: int, track: Track, voice_channel: Any, *, autostart: bool = True) -> int:
        """Appends `track` to the guild's queue, connecting first if needed. Returns its 1-based position."""
        self._remember_loop()
        async with self.guild_locks[guild_id]:
            state = self.guild_states.get(guild_id)
            if state is not None and not state.sink.is_connected:
                log.warning(f"ENQUEUE: GID {guild_id} - Voice connection was lost. Discarding old state.")
                self.guild_states.pop(guild_id, None)
                await self._teardown(state)
                state = None

            if state is None:
                if voice_channel is None:
                    raise NotInVoiceChannel()
                sink = await self.sink_factory(voice_channel)
                if sink is None:
                    log.warning(f"ENQUEUE: GID {guild_id} - Could not obtain a voice connection.")
                    raise VoiceConnectionFailed()
                state = GuildPlaybackState(guild_id=guild_id, sink=sink, volume=self.default_volume)
                self.guild_states[guild_id] = state
                log.info(f"ENQUEUE: GID {guild_id} - Created playback state.")

            state.queue.append(track)
            position = len(state.queue)
            log.info(f"ENQUEUE: GID {guild_id} - Appended '{track.title[:50]}'. New Length: {position}")

            if autostart and not state.playing:
                # Raises if this track itself could not be started
                await self._advance(state, caller_track=track)
            return position

    async def advance(self, guild_id: int) -> Optional[Track]:
        """Starts the next queued track if the guild is idle. Returns the current track."""
        self._remember_loop()
        async with self.guild_locks[guild_id]:
            state = self._require_state(guild_id)
            if state.playing:
                log.debug(f"ADVANCE: GID {guild_id} - Already playing, nothing to do.")
                return state.current
            return await self._advance(state)

    async def skip(self, guild_id: int) -> Optional[Track]:
        """Ends the current track and moves on. Returns the skipped track, if any."""
        self._remember_loop()
        async with self.guild_locks[guild_id]:
            state = self._require_state(guild_id)
            session, skipped = state.detach_session()
            if session is not None:
                state.sink.stop(session)
            if skipped is None:
                log.info(f"SKIP: GID {guild_id} - Nothing was playing.")
            else:
                log.info(f"SKIP: GID {guild_id} - Skipped '{skipped.title[:50]}'")
                if state.loop_mode is LoopMode.ALL:
                    state.queue.append(skipped)
            await self._advance(state)
            return skipped

    async def stop(self, guild_id: int, reason: str = "stop command") -> bool:
        """Clears everything and releases the voice connection. Safe to call repeatedly."""
        if guild_id not in self.guild_states and guild_id not in self.guild_locks:
            log.debug(f"STOP: GID {guild_id} - No playback state ({reason}). Nothing to do.")
            return False
        async with self.guild_locks[guild_id]:
            state = self.guild_states.pop(guild_id, None)
            if state is None:
                log.debug(f"STOP: GID {guild_id} - No playback state ({reason}). Nothing to do.")
                return False
            log.info(f"STOP: GID {guild_id} - Tearing down playback ({reason}). Dropping {len(state.queue)} queued item(s).")
            await self._teardown(state)
            return True

    async def on_voice_channel_vacant(self, guild_id: int) -> bool:
        return await self.stop(guild_id, reason="voice channel vacant")

    async def set_loop_mode(self, guild_id: int, mode: Any) -> LoopMode:
        async with self.guild_locks[guild_id]:
            state = self._require_state(guild_id)
            parsed = LoopMode.parse(mode)
            if parsed is None:
                raise InvalidLoopMode(mode)
            state.loop_mode = parsed
            log.info(f"LOOP: GID {guild_id} - Loop mode set to {parsed.value}")
            return parsed

    async def set_volume(self, guild_id: int, volume: Any) -> int:
        async with self.guild_locks[guild_id]:
            state = self._require_state(guild_id)
            # Whole percentages only
            if isinstance(volume, bool) or not isinstance(volume, int) or not self.min_volume <= volume <= self.max_volume:
                raise InvalidVolume(volume, self.min_volume, self.max_volume)
            state.volume = volume
            state.sink.set_volume(state.volume)
            log.info(f"VOLUME: GID {guild_id} - Volume set to {state.volume}%")
            return state.volume

    async def remove(self, guild_id: int, position: int) -> Track:
        """Removes the track at 1-based `position` from the queue."""
        async with self.guild_locks[guild_id]:
            state = self._require_state(guild_id)
            if not 1 <= position <= len(state.queue):
                raise InvalidQueuePosition(position, len(state.queue))
            removed = state.queue[position - 1]
            del state.queue[position - 1]
            log.info(f"REMOVE: GID {guild_id} - Removed '{removed.title[:50]}' from position {position}")
            return removed

    async def shutdown(self):
        for guild_id in list(self.guild_states):
            await self.stop(guild_id, reason="shutdown")
        await self.drain()

    # --- Session completion ---

    def signal_session_end(self, guild_id: int, session: PlaybackSession, outcome: SessionOutcome):
        """Completion callback handed to sinks. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            log.warning(f"Session end for GID {guild_id} arrived with no running loop. Ignored.")
            return
        try:
            loop.call_soon_threadsafe(self._spawn_session_end, guild_id, session, outcome)
        except RuntimeError as e:
            log.warning(f"Could not schedule session end for GID {guild_id}: {e}")

    def _spawn_session_end(self, guild_id: int, session: PlaybackSession, outcome: SessionOutcome):
        self._spawn(self.on_session_end(guild_id, session, outcome), name=f"SessionEnd_{guild_id}")

    async def on_session_end(self, guild_id: int, session: PlaybackSession, outcome: SessionOutcome):
        if guild_id not in self.guild_states and guild_id not in self.guild_locks:
            return
        async with self.guild_locks[guild_id]:
            state = self.guild_states.get(guild_id)
            if state is None or state.session is not session:
                log.debug(f"SESSION END: GID {guild_id} - Stale {outcome.name} signal for '{session.track.title[:50]}'. Ignored.")
                return
            _, finished = state.detach_session()
            if outcome is SessionOutcome.COMPLETED and finished is not None:
                if state.loop_mode is LoopMode.ONE:
                    state.queue.appendleft(finished)
                elif state.loop_mode is LoopMode.ALL:
                    state.queue.append(finished)
                log.debug(f"SESSION END: GID {guild_id} - Finished '{finished.title[:50]}' (loop: {state.loop_mode.value})")
            else:
                log.warning(f"SESSION END: GID {guild_id} - Sink cancelled the active session on its own.")
            await self._advance(state)

    # --- Internals (caller holds the guild lock) ---

    async def _advance(self, state: GuildPlaybackState, caller_track: Optional[Track] = None) -> Optional[Track]:
        """
        Pops tracks until one starts. A track that fails to start is dropped and
        reported; `caller_track`'s failure is raised to the caller instead.
        """
        guild_id = state.guild_id
        failures = 0
        started = None
        caller_error = None
        while state.queue:
            track = state.queue.popleft()
            state.current = track
            try:
                session = await state.sink.start(track, state.volume, partial(self.signal_session_end, guild_id))
            except Exception as e:
                if isinstance(e, SinkStartFailure):
                    error = e
                    log.error(f"ADVANCE: GID {guild_id} - Failed to start '{track.title[:50]}': {e}")
                else:
                    error = SinkStartFailure(f"❌ Could not start **{track.title}**.")
                    log.error(f"ADVANCE: GID {guild_id} - Unexpected error starting '{track.title[:50]}': {e}", exc_info=True)
                state.current = None
                failures += 1
                stalled = failures >= self.max_start_attempts
                if track is caller_track:
                    caller_error = error
                else:
                    self._notify(self.on_track_failure, guild_id, track, error, stalled)
                if stalled:
                    log.error(f"ADVANCE: GID {guild_id} - {failures} consecutive start failures. Giving up until the next command.")
                    break
                continue

            state.session = session
            state.playing = True
            log.info(f"ADVANCE: GID {guild_id} - Now playing '{track.title[:50]}'. {len(state.queue)} left in queue.")
            self._notify(self.on_track_start, guild_id, track)
            started = track
            break
        else:
            log.info(f"ADVANCE: GID {guild_id} - Queue empty. Idle.")

        if started is None:
            state.detach_session()
        if caller_error is not None:
            raise caller_error
        return started

    async def _teardown(self, state: GuildPlaybackState):
        state.queue.clear()
        session, _ = state.detach_session()
        if session is not None:
            state.sink.stop(session)
        try:
            await state.sink.release()
        except Exception as e:
            log.error(f"Error releasing voice connection for GID {state.guild_id}: {e}", exc_info=True)

    # --- Background tasks ---

    def _remember_loop(self):
        self._loop = asyncio.get_running_loop()

    def _notify(self, listener: Optional[Callable[..., Awaitable[None]]], *args):
        if listener is None:
            return
        self._spawn(listener(*args), name=f"Notify_{getattr(listener, '__name__', 'listener')}")

    def _spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    async def drain(self):
        """Waits until every background task spawned so far (and any they spawn) has finished."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)
