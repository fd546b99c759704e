"""Shared fixtures for the playback tests.

Everything runs against in-memory fakes, no Discord, FFmpeg or network.
"""

import pytest

from core.playback_manager import GuildPlaybackManager
from fakes import FakeResolver, FakeSinkFactory


@pytest.fixture()
def sink_factory() -> FakeSinkFactory:
    return FakeSinkFactory()


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture()
def manager(resolver, sink_factory) -> GuildPlaybackManager:
    return GuildPlaybackManager(resolver, sink_factory, max_start_attempts=3, default_volume=100)
