# -*- coding: utf-8 -*-
from typing import List, Optional

import config
from core.music_types import LoopMode, Track

MAX_QUEUE_DISPLAY = getattr(config, 'MAX_QUEUE_DISPLAY', 10)
MAX_MESSAGE_LENGTH = 2000 # Discord message content limit

LOOP_MODE_LABELS = {
    LoopMode.NONE: "➡️ Loop off",
    LoopMode.ONE: "🔂 Repeating current track",
    LoopMode.ALL: "🔁 Repeating whole queue",
}


def truncate(text: str, limit: int, suffix: str = "…") -> str:
    """Cuts `text` to at most `limit` characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[:max(0, limit - len(suffix))] + suffix


def format_track(track: Track, with_link: bool = False) -> str:
    title = truncate(track.title, 80)
    if with_link:
        title = f"[{title}]({track.source_ref})"
    return f"{title} | `{track.duration_str}` | Req by: {track.requested_by}"


def format_now_playing(track: Optional[Track]) -> str:
    if track is None:
        return "Nothing is playing."
    return f"🎶 Now playing: **{truncate(track.title, 100)}** (requested by {track.requested_by})"


def format_queue(queue: Optional[List[Track]], current: Optional[Track] = None, max_display: int = MAX_QUEUE_DISPLAY) -> str:
    """Plain-text queue listing used by the text commands and the /queue embed."""
    if queue is None:
        return "I'm not playing anything in this server right now."
    if not queue and current is None:
        return "Queue is empty."

    lines = []
    if current is not None:
        lines.append(f"▶️ **Now Playing:** {format_track(current)}")
    if queue:
        lines.append("**Up Next:**")
        for i, track in enumerate(queue[:max_display]):
            lines.append(f"`{i + 1}.` {format_track(track)}")
        if len(queue) > max_display:
            lines.append(f"...and {len(queue) - max_display} more.")
    else:
        lines.append("Queue is empty.")
    return truncate("\n".join(lines), MAX_MESSAGE_LENGTH - 100, "\n... (Queue too long to display fully)")


def format_loop_mode(mode: Optional[LoopMode]) -> str:
    return LOOP_MODE_LABELS.get(mode or LoopMode.NONE)
