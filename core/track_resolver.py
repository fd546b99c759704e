# core/track_resolver.py

import asyncio
import logging
from functools import partial
from typing import Any, Dict, Optional

import yt_dlp

import config
from core.music_types import Track

log = logging.getLogger('MusicBot.TrackResolver')

YTDL_MAX_DURATION = getattr(config, 'YTDL_MAX_DURATION', 0) # Seconds, 0 disables the cap


class YtdlTrackResolver:
    """Turns a URL or free-text search into a Track using yt-dlp."""

    def __init__(self, ytdl_opts: Optional[Dict[str, Any]] = None, max_duration: int = YTDL_MAX_DURATION):
        self.ytdl_opts = dict(ytdl_opts if ytdl_opts is not None else getattr(config, 'YTDL_OPTS', {}))
        self.ytdl_opts.setdefault('default_search', 'ytsearch1') # Search YouTube and return 1 result
        self.ytdl_opts['noplaylist'] = True
        self.max_duration = max_duration

    async def _extract_info(self, query: str) -> Optional[Dict[str, Any]]:
        """Runs yt-dlp extract_info in executor."""
        log.debug(f"Running yt-dlp info extraction for: {query[:100]}")
        try:
            # Fresh instance per lookup, YoutubeDL keeps per-run state
            ydl_instance = yt_dlp.YoutubeDL(dict(self.ytdl_opts))
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, partial(ydl_instance.extract_info, query, download=False))
        except yt_dlp.utils.DownloadError as e:
            log.warning(f"yt-dlp could not resolve '{query[:100]}': {e}")
            return None

        if not data:
            log.warning(f"yt-dlp extract_info returned no data for query: {query[:100]}")
            return None

        # Searches come back as a playlist of entries
        if 'entries' in data:
            entries = [entry for entry in data['entries'] if entry]
            if not entries:
                log.warning(f"yt-dlp result has empty 'entries' for query: {query[:100]}")
                return None
            log.debug(f"Search yielded {len(entries)} results for '{query[:100]}', using first.")
            return entries[0]
        return data

    async def resolve(self, query: str, requested_by: str, **meta) -> Optional[Track]:
        """Returns a Track for `query`, or None when nothing playable was found."""
        query = (query or "").strip()
        if not query:
            return None

        video_info = await self._extract_info(query)
        if not video_info:
            return None

        duration = video_info.get('duration')
        if self.max_duration > 0 and duration and duration > self.max_duration:
            log.warning(f"Video '{video_info.get('title', 'N/A')}' duration ({duration}) exceeds limit ({self.max_duration}). Skipping.")
            return None

        source_ref = video_info.get('webpage_url') or video_info.get('original_url') or video_info.get('url')
        if not source_ref:
            log.warning(f"Resolved entry for '{query[:100]}' has no usable URL.")
            return None

        thumbnails = video_info.get('thumbnails')
        if isinstance(thumbnails, list) and thumbnails:
            thumbnail = thumbnails[-1].get('url')
        else:
            thumbnail = video_info.get('thumbnail')

        return Track(
            title=video_info.get('title') or query,
            source_ref=source_ref,
            requested_by=requested_by,
            duration_sec=int(duration) if duration else None,
            uploader=video_info.get('uploader'),
            thumbnail=thumbnail,
            **meta,
        )
