from __future__ import annotations
import asyncio
import logging
from typing import Optional, Dict, List, Callable, Awaitable

from store_app import RecordStore
from djbot.settings import DEFAULT_MESSAGES
from djbot.cooldowns import CooldownGuard
from djbot.playlist_gateway import PlaylistGateway
from djbot.skip_votes import SkipVoteCounter
from djbot.song_ledger import SongLedger

logger = logging.getLogger(__name__)

NOW_PLAYING_TITLE_LIMIT = 50


class PeriodicReconciler:
    """Background jobs that keep the playlist and the records in step.

    Each job runs in its own loop and sleeps between runs, so a slow run
    delays the next one instead of overlapping it.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        gateway: PlaylistGateway,
        ledger: SongLedger,
        cooldowns: CooldownGuard,
        skip_votes: SkipVoteCounter,
        chat,
        messages: Optional[Dict[str, str]] = None,
        fill_interval: float = 2,
        played_interval: float = 60,
        now_playing_interval: float = 2,
        notify_interval: float = 2,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        task_factory: Optional[Callable[[Awaitable], asyncio.Task]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.ledger = ledger
        self.cooldowns = cooldowns
        self.skip_votes = skip_votes
        self.chat = chat
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.intervals = {
            'fill_empty_queue': fill_interval,
            'mark_played': played_interval,
            'announce_now_playing': now_playing_interval,
            'notify_eligible': notify_interval,
        }
        self._sleep = sleep or asyncio.sleep
        self._create_task = task_factory or asyncio.create_task
        self.last_head_id: Optional[str] = None
        self.tasks: List[asyncio.Task] = []

    async def fill_empty_queue(self) -> bool:
        if not await self.gateway.status():
            return False
        playlist = await self.gateway.playlist()
        if playlist.queue:
            return False
        song = self.store.random_song()
        if song is None:
            return False
        await self.gateway.add_video(song.link)
        logger.info("Queue empty; added %s", song.link)
        return True

    async def mark_played(self) -> int:
        return await self.ledger.reconcile_played()

    async def announce_now_playing(self) -> bool:
        if not await self.gateway.status():
            return False
        head = (await self.gateway.playlist()).head
        if head is None:
            return False
        if self.last_head_id is None:
            self.last_head_id = head.video_id
            return False
        if head.video_id == self.last_head_id:
            return False
        self.last_head_id = head.video_id
        self.skip_votes.reset()
        title = head.title
        if len(title) >= NOW_PLAYING_TITLE_LIMIT:
            title = title[:NOW_PLAYING_TITLE_LIMIT] + '[...]'
        await self.chat.send(self.messages['now_playing'].format(title=title))
        return True

    async def notify_eligible(self) -> int:
        if not await self.gateway.status():
            return 0
        notified = 0
        for user in self.store.users_pending_notification():
            if not self.cooldowns.can_add_video(user.username):
                continue
            await self.chat.send(self.messages['notify'].format(username=user.username))
            self.store.update_user(user.username, user_notified=True)
            notified += 1
        return notified

    async def _every(self, name: str) -> None:
        job = getattr(self, name)
        interval = self.intervals[name]
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic job %s failed", name)
            await self._sleep(interval)

    async def start(self) -> None:
        try:
            await self.ledger.sweep_missing()
        except Exception:
            logger.exception("Startup sweep failed")
        self.tasks = [self._create_task(self._every(name)) for name in self.intervals]

    async def stop(self) -> None:
        tasks, self.tasks = self.tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
