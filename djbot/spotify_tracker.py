from __future__ import annotations
import re
import asyncio
import logging
from typing import Optional, Dict, Set, Callable, Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import aiohttp

from store_app import RecordStore, User
from djbot.settings import DjSettings, DEFAULT_MESSAGES
from djbot.cooldowns import CooldownGuard
from djbot.spotify_client import SpotifyClient, SpotifyError, NowPlaying, TokenExpired, PlayerResult

logger = logging.getLogger(__name__)

POLL_INTERVAL = 10
IDLE_TIMEOUT = timedelta(minutes=10)
# Pauses after a token refresh, in the main poll and in the re-check.
EXPIRED_BACKOFF = 20
RECHECK_BACKOFF = 1
TOKEN_LIFETIME = timedelta(minutes=5)

_WHISPER_FRAME = re.compile(r'^.*?WHISPER \S+ :')

ACCESS_TOKEN_KEYS = ('token', 'access_token')
REFRESH_TOKEN_KEYS = ('refreshToken', 'refresh_token')

SPOTIFY_ERRORS = (SpotifyError, aiohttp.ClientError, asyncio.TimeoutError)


def parse_token_message(text: str) -> Dict[str, str]:
    """Flat map from ``key1=value1;key2=value2``, tolerating IRC whisper framing."""
    body = _WHISPER_FRAME.sub('', text or '', count=1)
    result: Dict[str, str] = {}
    for pair in body.split(';'):
        key, sep, value = pair.strip().partition('=')
        key, value = key.strip(), value.strip()
        if sep and key and value:
            result[key] = value
    return result


def _first(values: Dict[str, str], keys) -> Optional[str]:
    for key in keys:
        if values.get(key):
            return values[key]
    return None


@dataclass
class TrackingSession:
    username: str
    max_songs: int
    last_new_song_at: datetime
    last_title: Optional[str] = None
    last_url: Optional[str] = None
    added_urls: Set[str] = field(default_factory=set)
    added: int = 0
    outcome: Optional[str] = None


class SpotifyTracker:
    """Mirrors a user's Spotify "now playing" into the playlist.

    One asyncio task per tracking user. Start and stop talk to the task only
    through the persisted ``is_tracking`` flag, which the task checks at the
    top of every poll.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        cooldowns: CooldownGuard,
        spotify: SpotifyClient,
        add_video: Callable[..., Awaitable[bool]],
        chat,
        settings: DjSettings,
        messages: Optional[Dict[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        task_factory: Optional[Callable[[Awaitable], asyncio.Task]] = None,
        poll_interval: float = POLL_INTERVAL,
        idle_timeout: timedelta = IDLE_TIMEOUT,
    ):
        self.store = store
        self.cooldowns = cooldowns
        self.spotify = spotify
        self.add_video = add_video
        self.chat = chat
        self.settings = settings
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.clock = clock or store.clock
        self._sleep = sleep or asyncio.sleep
        self._create_task = task_factory or asyncio.create_task
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.tasks: Dict[str, asyncio.Task] = {}

    @property
    def max_songs(self) -> int:
        return self.settings.max_tracked_songs

    async def say(self, key: str, **values) -> None:
        await self.chat.send(self.messages[key].format(**values))

    def is_running(self, username: str) -> bool:
        task = self.tasks.get(username)
        return task is not None and not task.done()

    @staticmethod
    def _connected(user: Optional[User]) -> bool:
        return bool(user and user.spotify_access_token and user.spotify_refresh_token)

    async def _add_cooldown_message(self, username: str) -> None:
        await self.say(
            'add_cooldown',
            username=username,
            minutes=self.settings.add_video_minutes,
            remaining=self.cooldowns.time_to_next_video(username),
        )

    # ---- token handling ----
    def accept_token_message(self, username: str, text: str) -> bool:
        values = parse_token_message(text)
        access = _first(values, ACCESS_TOKEN_KEYS)
        refresh = _first(values, REFRESH_TOKEN_KEYS)
        if not access or not refresh:
            return False
        self.store.get_or_create_user(username)
        self.store.update_user(
            username,
            spotify_access_token=access,
            spotify_refresh_token=refresh,
            spotify_token_expiration=self.clock() + TOKEN_LIFETIME,
        )
        logger.info("Stored Spotify tokens for %s", username)
        return True

    def _store_refreshed(self, username: str, refreshed: TokenExpired) -> None:
        fields = {
            'spotify_access_token': refreshed.access_token,
            'spotify_token_expiration': self.clock() + TOKEN_LIFETIME,
        }
        if refreshed.refresh_token:
            fields['spotify_refresh_token'] = refreshed.refresh_token
        self.store.update_user(username, **fields)

    async def _fetch(self, user: User) -> PlayerResult:
        try:
            return await self.spotify.currently_playing(
                user.spotify_access_token,
                user.spotify_refresh_token,
            )
        except SPOTIFY_ERRORS as exc:
            logger.warning("Spotify lookup for %s failed: %s", user.username, exc)
            return None

    # ---- commands ----
    async def start(self, username: str) -> bool:
        user = self.store.get_user(username)
        if not self._connected(user):
            await self.say('spotify_not_connected', username=username)
            return False
        if not self.cooldowns.can_add_video(username):
            await self._add_cooldown_message(username)
            return False
        if user.is_tracking or self.is_running(username):
            await self.say('track_already', username=username)
            return False
        self.store.update_user(username, is_tracking=True, user_notified=True)
        await self.say('track_started', username=username, max_songs=self.max_songs)
        self.tasks[username] = self._create_task(self.run_session(username))
        return True

    async def stop(self, username: str) -> bool:
        user = self.store.get_user(username)
        if user is None:
            await self.say('spotify_not_connected', username=username)
            return False
        if not user.is_tracking:
            await self.say('track_not_running', username=username)
            return False
        if not self.cooldowns.can_stop_tracking(username):
            await self.say(
                'track_stop_cooldown',
                username=username,
                remaining=self.cooldowns.time_to_next_track_stop(username),
            )
            return False
        self.store.update_user(username, is_tracking=False)
        self.cooldowns.set_last_track_stop(username)
        await self.say('track_stopped', username=username)
        return True

    async def add_current(self, username: str) -> bool:
        user = self.store.get_user(username)
        if not self._connected(user):
            await self.say('spotify_not_connected', username=username)
            return False
        if not self.cooldowns.can_add_video(username):
            await self._add_cooldown_message(username)
            return False
        current = await self._fetch(user)
        if isinstance(current, TokenExpired):
            self._store_refreshed(username, current)
            current = await self._fetch(self.store.get_user(username))
        if not isinstance(current, NowPlaying):
            await self.say('current_missing', username=username)
            return False
        if await self._recheck(username, current) is False:
            logger.info("%s moved past %r; adding it anyway", username, current.title)
        try:
            added = await self.add_video(username, current.title, quiet=True)
        except Exception:
            logger.exception("Adding current Spotify song for %s failed", username)
            added = False
        if not added:
            await self.say('current_error', username=username)
            return False
        self.cooldowns.set_last_added_video(username, clear_notified=False)
        await self.say('current_added', username=username, title=current.title)
        return True

    async def shutdown(self) -> None:
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()

    # ---- session ----
    async def run_session(self, username: str) -> TrackingSession:
        session = TrackingSession(
            username=username,
            max_songs=self.max_songs,
            last_new_song_at=self.clock(),
        )
        try:
            session.outcome = await self._poll(session)
        except asyncio.CancelledError:
            session.outcome = 'cancelled'
            raise
        except Exception:
            logger.exception("Spotify tracker for %s crashed", username)
            session.outcome = 'error'
        finally:
            self.store.update_user(username, is_tracking=False)
            if self.tasks.get(username) is asyncio.current_task():
                self.tasks.pop(username, None)
        logger.info("Spotify tracker for %s ended (%s, %d added)", username, session.outcome, session.added)
        if session.outcome == 'finished':
            await self.say('track_finished', username=username, count=session.added)
        elif session.outcome == 'idle':
            await self.say('track_idle', username=username, count=session.added)
        elif session.outcome in ('error', 'disconnected'):
            await self.say('track_error', username=username)
        return session

    async def _poll(self, session: TrackingSession) -> str:
        username = session.username
        while session.added < session.max_songs:
            if self.clock() - session.last_new_song_at > self.idle_timeout:
                return 'idle'
            user = self.store.get_user(username)
            if user is None or not user.is_tracking:
                return 'stopped'
            if not self._connected(user):
                return 'disconnected'
            current = await self._fetch(user)
            if isinstance(current, TokenExpired):
                self._store_refreshed(username, current)
                await self._sleep(EXPIRED_BACKOFF)
                continue
            if isinstance(current, NowPlaying) and current.title != session.last_title:
                # A new title seen while the add cooldown still runs is left
                # for a later tick.
                if self.cooldowns.can_add_video(username):
                    await self._consume(session, current)
            await self._sleep(self.poll_interval)
        return 'finished'

    async def _recheck(self, username: str, detected: NowPlaying) -> Optional[bool]:
        """Whether ``detected`` is still playing; ``None`` if the token had to be refreshed."""
        latest = self.store.get_user(username)
        if not self._connected(latest):
            return False
        check = await self._fetch(latest)
        if isinstance(check, TokenExpired):
            self._store_refreshed(username, check)
            return None
        return isinstance(check, NowPlaying) and check.title == detected.title

    async def _consume(self, session: TrackingSession, detected: NowPlaying) -> None:
        username = session.username
        still_playing = await self._recheck(username, detected)
        if still_playing is None:
            await self._sleep(RECHECK_BACKOFF)
            return
        session.last_title = detected.title
        session.last_url = detected.url
        session.last_new_song_at = self.clock()
        if not still_playing:
            logger.info("%s moved past %r; adding it anyway", username, detected.title)
        # Added whether or not it is still playing.
        if not detected.url:
            logger.info("Skipping Spotify track %r for %s: no URL", detected.title, username)
            return
        if detected.url in session.added_urls:
            logger.info("Skipping duplicate Spotify track %r for %s", detected.title, username)
            return
        try:
            added = await self.add_video(username, detected.title, quiet=True)
        except Exception:
            logger.exception("Tracker add for %s failed", username)
            return
        if not added:
            return
        session.added_urls.add(detected.url)
        session.added += 1
        self.cooldowns.set_last_added_video(username, clear_notified=False)
        await self.say(
            'track_progress',
            username=username,
            count=session.added,
            max_songs=session.max_songs,
            title=detected.title,
        )
