from __future__ import annotations
import logging
from typing import Optional, List, Callable
from datetime import datetime, timedelta
from urllib.parse import urlparse, parse_qs

from store_app import RecordStore, UserSong
from djbot.playlist_gateway import PlaylistGateway, Playlist

logger = logging.getLogger(__name__)

RECENCY_WINDOW = timedelta(minutes=5)


def extract_video_id(link: str) -> str:
    """Video id from a youtu.be or youtube.com link; anything else is taken as the id."""
    if not link:
        return ''
    if 'youtu.be' in link:
        path = urlparse(link).path if '://' in link else link
        return path.rstrip('/').rsplit('/', 1)[-1]
    if 'youtube.com' in link:
        query = urlparse(link).query
        values = parse_qs(query).get('v')
        if values:
            return values[0]
        if 'v=' in link:
            return link.split('v=', 1)[1].split('&', 1)[0]
    return link


def format_wait(seconds: int) -> str:
    seconds = max(int(seconds), 0)
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class SongLedger:
    """Who added what, and whether it has played yet."""

    def __init__(
        self,
        store: RecordStore,
        gateway: PlaylistGateway,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock or store.clock

    def add_user_song(self, username: str, link: str, title: str) -> Optional[UserSong]:
        row = self.store.add_user_song(username, link, title)
        if row is None:
            logger.warning("Cannot record song %s for unknown user %s", link, username)
        return row

    async def _current_playlist(self) -> Optional[Playlist]:
        try:
            return await self.gateway.playlist()
        except Exception as exc:
            logger.warning("Playlist unavailable: %s", exc)
            return None

    async def reconcile_played(self) -> int:
        """Mark unplayed rows matching the queue head as played."""
        playlist = await self._current_playlist()
        if playlist is None or playlist.head is None:
            return 0
        head_id = playlist.head.video_id
        matched = [
            row.id for row in self.store.unplayed_user_songs()
            if row.link and extract_video_id(row.link) == head_id
        ]
        marked = self.store.mark_played(matched)
        if marked:
            logger.info("Marked %d song(s) played for %s", marked, head_id)
        return marked

    async def sweep_missing(self) -> int:
        """Mark unplayed rows whose video is no longer anywhere in the queue."""
        playlist = await self._current_playlist()
        if playlist is None:
            return 0
        queued = {item.video_id for item in playlist.queue}
        missing = [
            row.id for row in self.store.unplayed_user_songs()
            if not row.link or extract_video_id(row.link) not in queued
        ]
        marked = self.store.mark_played(missing)
        if marked:
            logger.info("Marked %d stale song(s) played", marked)
        return marked

    def remove_most_recent_unplayed(self, username: str) -> Optional[UserSong]:
        return self.store.claim_recent_unplayed(username, self.clock() - RECENCY_WINDOW)

    def unplayed_for(self, username: str) -> List[UserSong]:
        return self.store.unplayed_user_songs(username)

    @staticmethod
    def estimate_wait(link: str, playlist: Playlist) -> Optional[int]:
        """Seconds until ``link`` starts playing, or ``None`` if it is not queued."""
        video_id = extract_video_id(link)
        total = 0.0
        if not playlist.paused:
            total -= playlist.current_time
        for item in playlist.queue:
            if item.video_id == video_id:
                return max(int(total), 0)
            total += item.duration
        return None
