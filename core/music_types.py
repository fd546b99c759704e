# core/music_types.py

import datetime
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Optional

log = logging.getLogger('MusicBot.MusicTypes')

# --- Enums and Dataclasses ---
class LoopMode(Enum):
    NONE = "none"
    ONE = "one"
    ALL = "all"

    @classmethod
    def parse(cls, value: Any) -> Optional["LoopMode"]:
        """Returns the matching LoopMode for a LoopMode or string value, None if unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def next(self) -> "LoopMode":
        """Cycles none -> one -> all -> none (used by the Loop button)."""
        members = list(LoopMode)
        return members[(members.index(self) + 1) % len(members)]


@dataclass(frozen=True, eq=False)
class Track:
    title: str
    source_ref: str # URL handed to the AudioSink
    requested_by: str
    requester_id: Optional[int] = None
    channel_id: Optional[int] = None # Text channel for announcements
    duration_sec: Optional[int] = None
    uploader: Optional[str] = None
    thumbnail: Optional[str] = None

    # --- Properties ---
    @property
    def duration_str(self) -> str:
        sec = self.duration_sec
        return str(datetime.timedelta(seconds=int(sec))) if sec is not None else "N/A"

    @property
    def requester_mention(self) -> str:
        return f"<@{self.requester_id}>" if self.requester_id else self.requested_by


@dataclass
class GuildPlaybackState:
    guild_id: int
    sink: Any # AudioSink holding this guild's voice connection
    volume: int = 100
    loop_mode: LoopMode = LoopMode.NONE
    queue: Deque[Track] = field(default_factory=deque)
    current: Optional[Track] = None
    playing: bool = False
    session: Any = None # Active PlaybackSession, if any

    def detach_session(self):
        """Forgets the active session and current track. Returns (session, track)."""
        session, track = self.session, self.current
        self.session = None
        self.current = None
        self.playing = False
        return session, track
