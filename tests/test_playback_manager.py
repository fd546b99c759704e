"""Tests for the per-guild queue state machine in ``GuildPlaybackManager``."""

import asyncio

import pytest

from core.audio_sink import SessionOutcome
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
from core.music_types import LoopMode
from fakes import finish_current, make_channel, make_track

GUILD = 1
OTHER_GUILD = 2


def titles(tracks):
    return [t.title for t in tracks]


async def enqueue_all(manager, guild_id, *names, autostart=True):
    tracks = [make_track(name) for name in names]
    for track in tracks:
        await manager.enqueue(guild_id, track, make_channel(guild_id), autostart=autostart)
    return tracks


class TestQueueOrder:

    @pytest.mark.asyncio
    async def test_tracks_play_in_enqueue_order(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b", "c")
        for _ in range(3):
            await finish_current(manager, GUILD)

        assert sink_factory.sinks[GUILD].started_titles == ["a", "b", "c"]
        assert manager.now_playing(GUILD) is None
        assert manager.is_playing(GUILD) is False
        # Connection is kept after the queue runs dry
        assert manager.has_state(GUILD)
        assert sink_factory.sinks[GUILD].released is False

    @pytest.mark.asyncio
    async def test_peek_then_advance_scenario(self, manager):
        a, b = await enqueue_all(manager, GUILD, "a", "b", autostart=False)
        assert titles(manager.peek_queue(GUILD)) == ["a", "b"]
        assert manager.now_playing(GUILD) is None

        started = await manager.advance(GUILD)

        assert started is a
        assert manager.now_playing(GUILD) is a
        assert titles(manager.peek_queue(GUILD)) == ["b"]

    @pytest.mark.asyncio
    async def test_enqueue_peek_advance_round_trip(self, manager):
        (t,) = await enqueue_all(manager, GUILD, "t", autostart=False)
        assert manager.peek_queue(GUILD) == [t]

        await manager.advance(GUILD)

        assert manager.peek_queue(GUILD) == []
        assert manager.now_playing(GUILD) is t

    @pytest.mark.asyncio
    async def test_peek_distinguishes_empty_from_unknown(self, manager):
        assert manager.peek_queue(GUILD) is None
        await enqueue_all(manager, GUILD, "a")
        assert manager.peek_queue(GUILD) == []

    @pytest.mark.asyncio
    async def test_enqueue_while_playing_only_queues(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a")
        position = await manager.enqueue(GUILD, make_track("b"), make_channel(GUILD))

        assert position == 1
        assert sink_factory.sinks[GUILD].started_titles == ["a"]
        assert titles(manager.peek_queue(GUILD)) == ["b"]

    @pytest.mark.asyncio
    async def test_advance_while_playing_is_a_noop(self, manager, sink_factory):
        a, _ = await enqueue_all(manager, GUILD, "a", "b")
        assert await manager.advance(GUILD) is a
        assert sink_factory.sinks[GUILD].started_titles == ["a"]

    @pytest.mark.asyncio
    async def test_advance_unknown_guild(self, manager):
        with pytest.raises(NoActiveState):
            await manager.advance(GUILD)


class TestLoopModes:

    @pytest.mark.asyncio
    async def test_loop_one_replays_until_skipped(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b")
        await manager.set_loop_mode(GUILD, "one")

        for _ in range(3):
            await finish_current(manager, GUILD)
        assert sink_factory.sinks[GUILD].started_titles == ["a"] * 4
        assert titles(manager.peek_queue(GUILD)) == ["b"]

        skipped = await manager.skip(GUILD)
        assert skipped.title == "a"
        assert manager.now_playing(GUILD).title == "b"
        assert manager.peek_queue(GUILD) == []

        await finish_current(manager, GUILD)
        assert sink_factory.sinks[GUILD].started_titles == ["a"] * 4 + ["b", "b"]

    @pytest.mark.asyncio
    async def test_loop_all_recycles_whole_queue(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b", "c")
        await manager.set_loop_mode(GUILD, LoopMode.ALL)

        for _ in range(6):
            await finish_current(manager, GUILD)

        assert sink_factory.sinks[GUILD].started_titles == ["a", "b", "c", "a", "b", "c", "a"]
        assert titles(manager.peek_queue(GUILD)) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_skip_under_loop_all_keeps_track_in_rotation(self, manager):
        await enqueue_all(manager, GUILD, "a", "b")
        await manager.set_loop_mode(GUILD, "ALL")

        await manager.skip(GUILD)

        assert manager.now_playing(GUILD).title == "b"
        assert titles(manager.peek_queue(GUILD)) == ["a"]

    @pytest.mark.asyncio
    async def test_switching_loop_off_stops_repeating(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b")
        await manager.set_loop_mode(GUILD, "one")
        await finish_current(manager, GUILD)
        await manager.set_loop_mode(GUILD, "none")
        await finish_current(manager, GUILD)

        assert sink_factory.sinks[GUILD].started_titles == ["a", "a", "b"]

    @pytest.mark.asyncio
    async def test_invalid_loop_mode_rejected(self, manager):
        await enqueue_all(manager, GUILD, "a")
        await manager.set_loop_mode(GUILD, "one")

        with pytest.raises(InvalidLoopMode):
            await manager.set_loop_mode(GUILD, "forever")

        assert manager.loop_mode(GUILD) is LoopMode.ONE


class TestSkipAndStop:

    @pytest.mark.asyncio
    async def test_skip_with_empty_queue_goes_idle_not_destroyed(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a")

        skipped = await manager.skip(GUILD)
        await manager.drain()

        assert skipped.title == "a"
        assert manager.has_state(GUILD)
        assert manager.now_playing(GUILD) is None
        assert manager.is_playing(GUILD) is False
        assert sink_factory.sinks[GUILD].released is False

    @pytest.mark.asyncio
    async def test_skip_when_idle_returns_none(self, manager):
        await enqueue_all(manager, GUILD, "a")
        await manager.skip(GUILD)
        assert await manager.skip(GUILD) is None

    @pytest.mark.asyncio
    async def test_skip_unknown_guild(self, manager):
        with pytest.raises(NoActiveState):
            await manager.skip(GUILD)

    @pytest.mark.asyncio
    async def test_cancelled_session_does_not_advance_twice(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b", "c")
        first_session = manager.guild_states[GUILD].session

        await manager.skip(GUILD)
        await manager.drain()
        # A late "completed" for the skipped session must be ignored
        await manager.on_session_end(GUILD, first_session, SessionOutcome.COMPLETED)

        assert first_session.outcome is SessionOutcome.CANCELLED
        assert manager.now_playing(GUILD).title == "b"
        assert titles(manager.peek_queue(GUILD)) == ["c"]
        assert sink_factory.sinks[GUILD].started_titles == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stop_releases_and_removes_state(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b")
        session = manager.guild_states[GUILD].session

        assert await manager.stop(GUILD) is True
        await manager.drain()

        assert not manager.has_state(GUILD)
        assert manager.peek_queue(GUILD) is None
        assert manager.now_playing(GUILD) is None
        assert sink_factory.sinks[GUILD].released is True
        assert session.outcome is SessionOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager):
        assert await manager.stop(GUILD) is False
        await enqueue_all(manager, GUILD, "a")
        assert await manager.stop(GUILD) is True
        assert await manager.stop(GUILD) is False
        assert not manager.has_state(GUILD)

    @pytest.mark.asyncio
    async def test_stop_on_unknown_guild_allocates_nothing(self, manager):
        assert await manager.stop(OTHER_GUILD) is False
        assert await manager.on_voice_channel_vacant(OTHER_GUILD) is False
        assert OTHER_GUILD not in manager.guild_locks

    @pytest.mark.asyncio
    async def test_late_completion_does_not_resurrect_stopped_guild(self, manager):
        await enqueue_all(manager, GUILD, "a", "b")
        session = manager.guild_states[GUILD].session
        await manager.stop(GUILD)

        await manager.on_session_end(GUILD, session, SessionOutcome.COMPLETED)

        assert not manager.has_state(GUILD)

    @pytest.mark.asyncio
    async def test_vacant_channel_behaves_like_stop(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a")
        assert await manager.on_voice_channel_vacant(GUILD) is True
        assert not manager.has_state(GUILD)
        assert sink_factory.sinks[GUILD].released is True
        assert await manager.on_voice_channel_vacant(GUILD) is False

    @pytest.mark.asyncio
    async def test_shutdown_stops_every_guild(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a")
        await enqueue_all(manager, OTHER_GUILD, "x")

        await manager.shutdown()

        assert manager.guild_states == {}
        assert all(sink.released for sink in sink_factory.sinks.values())


class TestVolume:

    @pytest.mark.asyncio
    async def test_out_of_range_volume_rejected(self, manager):
        await enqueue_all(manager, GUILD, "a")

        for bad in (201, -1, True, "loud"):
            with pytest.raises(InvalidVolume):
                await manager.set_volume(GUILD, bad)

        assert manager.volume(GUILD) == 100

    @pytest.mark.asyncio
    async def test_volume_applies_live_and_to_following_tracks(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b")

        assert await manager.set_volume(GUILD, 150) == 150
        await finish_current(manager, GUILD)

        sink = sink_factory.sinks[GUILD]
        assert sink.live_volume == 150
        assert sink.start_volumes == [100, 150]

    @pytest.mark.asyncio
    async def test_fractional_volume_rejected(self, manager):
        await enqueue_all(manager, GUILD, "a")
        await manager.set_volume(GUILD, 120)

        for bad in (150.9, 150.0):
            with pytest.raises(InvalidVolume):
                await manager.set_volume(GUILD, bad)

        assert manager.volume(GUILD) == 120

    @pytest.mark.asyncio
    async def test_volume_bounds_are_inclusive(self, manager):
        await enqueue_all(manager, GUILD, "a")
        assert await manager.set_volume(GUILD, 0) == 0
        assert await manager.set_volume(GUILD, 200) == 200

    @pytest.mark.asyncio
    async def test_volume_unknown_guild(self, manager):
        with pytest.raises(NoActiveState):
            await manager.set_volume(GUILD, 50)


class TestFailures:

    @pytest.mark.asyncio
    async def test_play_requires_voice_channel(self, manager, resolver):
        with pytest.raises(NotInVoiceChannel):
            await manager.play(GUILD, "song", "alice", None)
        assert resolver.queries == []
        assert not manager.has_state(GUILD)

    @pytest.mark.asyncio
    async def test_play_with_no_results_changes_nothing(self, manager):
        with pytest.raises(NoResolutionResult):
            await manager.play(GUILD, "nothing", "alice", make_channel(GUILD))
        assert not manager.has_state(GUILD)

    @pytest.mark.asyncio
    async def test_play_resolves_and_starts(self, manager):
        track, position = await manager.play(GUILD, "song", "alice", make_channel(GUILD), requester_id=5, channel_id=7)

        assert position == 1
        assert manager.now_playing(GUILD) is track
        assert track.requested_by == "alice"
        assert track.requester_id == 5
        assert track.channel_id == 7

    @pytest.mark.asyncio
    async def test_connection_failure_leaves_no_state(self, manager, sink_factory):
        sink_factory.fail_connect = True
        with pytest.raises(VoiceConnectionFailed):
            await manager.play(GUILD, "song", "alice", make_channel(GUILD))
        assert not manager.has_state(GUILD)

    @pytest.mark.asyncio
    async def test_lost_connection_is_replaced_on_next_enqueue(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a")
        old_sink = sink_factory.sinks[GUILD]
        old_sink.connected = False

        await enqueue_all(manager, GUILD, "b")

        new_sink = sink_factory.sinks[GUILD]
        assert new_sink is not old_sink
        assert old_sink.released is True
        assert new_sink.started_titles == ["b"]

    @pytest.mark.asyncio
    async def test_single_start_failure_moves_on(self, manager, sink_factory):
        sink_factory.failing_titles = {"bad"}
        failures = []

        async def on_failure(guild_id, track, error, stalled):
            failures.append((track.title, stalled))

        manager.on_track_failure = on_failure
        await enqueue_all(manager, GUILD, "bad", "good", autostart=False)

        started = await manager.advance(GUILD)
        await manager.drain()

        assert started.title == "good"
        assert failures == [("bad", False)]

    @pytest.mark.asyncio
    async def test_failed_track_at_end_of_queue_is_reported(self, manager, sink_factory):
        sink_factory.failing_titles = {"bad"}
        failures = []

        async def on_failure(guild_id, track, error, stalled):
            failures.append((track.title, error.user_message, stalled))

        manager.on_track_failure = on_failure
        await enqueue_all(manager, GUILD, "bad", autostart=False)

        assert await manager.advance(GUILD) is None
        await manager.drain()

        assert failures == [("bad", "cannot stream bad", False)]
        assert manager.peek_queue(GUILD) == []
        assert manager.is_playing(GUILD) is False

    @pytest.mark.asyncio
    async def test_play_raises_when_its_track_cannot_start(self, manager, sink_factory):
        sink_factory.failing_titles = {"bad"}
        failures = []

        async def on_failure(guild_id, track, error, stalled):
            failures.append(track.title)

        manager.on_track_failure = on_failure

        with pytest.raises(SinkStartFailure) as excinfo:
            await manager.play(GUILD, "bad", "alice", make_channel(GUILD))
        await manager.drain()

        assert excinfo.value.user_message == "cannot stream bad"
        assert failures == []
        assert manager.now_playing(GUILD) is None
        assert manager.peek_queue(GUILD) == []

        # The connection stays usable for the next request
        track, _ = await manager.play(GUILD, "good", "alice", make_channel(GUILD))
        assert manager.now_playing(GUILD) is track

    @pytest.mark.asyncio
    async def test_start_failures_are_bounded_and_reported(self, manager, sink_factory):
        sink_factory.failing_titles = {"x1", "x2", "x3"}
        failures = []

        async def on_failure(guild_id, track, error, stalled):
            failures.append((guild_id, track.title, error.user_message, stalled))

        manager.on_track_failure = on_failure
        await enqueue_all(manager, GUILD, "x1", "x2", "x3", "ok", autostart=False)

        assert await manager.advance(GUILD) is None
        await manager.drain()

        assert failures == [
            (GUILD, "x1", "cannot stream x1", False),
            (GUILD, "x2", "cannot stream x2", False),
            (GUILD, "x3", "cannot stream x3", True),
        ]
        assert manager.is_playing(GUILD) is False
        assert manager.now_playing(GUILD) is None
        assert titles(manager.peek_queue(GUILD)) == ["ok"]

        # The next command picks the queue back up
        assert (await manager.advance(GUILD)).title == "ok"

    @pytest.mark.asyncio
    async def test_remove_by_position(self, manager):
        await enqueue_all(manager, GUILD, "a", "b", "c")

        removed = await manager.remove(GUILD, 2)

        assert removed.title == "c"
        assert titles(manager.peek_queue(GUILD)) == ["b"]
        with pytest.raises(InvalidQueuePosition):
            await manager.remove(GUILD, 5)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_guilds_do_not_share_state(self, manager, sink_factory):
        await asyncio.gather(
            manager.enqueue(GUILD, make_track("a"), make_channel(GUILD)),
            manager.enqueue(OTHER_GUILD, make_track("x"), make_channel(OTHER_GUILD)),
        )
        await asyncio.gather(
            manager.enqueue(GUILD, make_track("b"), make_channel(GUILD)),
            manager.enqueue(OTHER_GUILD, make_track("y"), make_channel(OTHER_GUILD)),
        )
        await asyncio.gather(manager.skip(GUILD), manager.skip(OTHER_GUILD))
        await manager.drain()

        assert manager.now_playing(GUILD).title == "b"
        assert manager.now_playing(OTHER_GUILD).title == "y"
        assert sink_factory.sinks[GUILD].started_titles == ["a", "b"]
        assert sink_factory.sinks[OTHER_GUILD].started_titles == ["x", "y"]

    @pytest.mark.asyncio
    async def test_same_guild_commands_are_serialized(self, manager, sink_factory):
        await enqueue_all(manager, GUILD, "a", "b", "c", "d")

        await asyncio.gather(manager.skip(GUILD), manager.skip(GUILD))
        await manager.drain()

        assert sink_factory.sinks[GUILD].started_titles == ["a", "b", "c"]
        assert manager.now_playing(GUILD).title == "c"
        assert titles(manager.peek_queue(GUILD)) == ["d"]

    @pytest.mark.asyncio
    async def test_completion_signal_from_another_thread(self, manager):
        await enqueue_all(manager, GUILD, "a", "b")
        session = manager.guild_states[GUILD].session

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, session.finish, SessionOutcome.COMPLETED)
        await manager.drain()

        assert manager.now_playing(GUILD).title == "b"


class TestListeners:

    @pytest.mark.asyncio
    async def test_track_start_is_announced(self, manager):
        started = []

        async def on_start(guild_id, track):
            started.append((guild_id, track.title))

        manager.on_track_start = on_start
        await enqueue_all(manager, GUILD, "a", "b")
        await finish_current(manager, GUILD)

        assert started == [(GUILD, "a"), (GUILD, "b")]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_playback(self, manager):
        async def on_start(guild_id, track):
            raise RuntimeError("channel deleted")

        manager.on_track_start = on_start
        await enqueue_all(manager, GUILD, "a", "b")
        await finish_current(manager, GUILD)

        assert manager.now_playing(GUILD).title == "b"
