from __future__ import annotations
import math
from typing import Callable, Optional
from datetime import datetime, timedelta

from store_app import RecordStore, User
from djbot.settings import DjSettings

REMOVE_INTERVAL = timedelta(minutes=5)
TRACK_STOP_INTERVAL = timedelta(minutes=5)

Selector = Callable[[User], Optional[datetime]]


def last_added_video(user: User) -> Optional[datetime]:
    return user.last_added_video


def last_skip(user: User) -> Optional[datetime]:
    return user.last_skip


def last_removed_video(user: User) -> Optional[datetime]:
    return user.last_removed_video


def last_response(user: User) -> Optional[datetime]:
    return user.last_response


def last_track_stop(user: User) -> Optional[datetime]:
    return user.last_track_stop


class CooldownGuard:
    """Per-user, per-action time windows.

    Checks never write. After a successful action the caller stamps the
    matching timestamp with one of the ``set_*`` helpers.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: DjSettings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock or store.clock

    @property
    def add_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.add_video_minutes)

    @property
    def skip_interval(self) -> timedelta:
        return timedelta(minutes=self.settings.skip_minutes)

    @property
    def response_interval(self) -> timedelta:
        return timedelta(seconds=self.settings.response_seconds)

    def can_act(self, username: str, selector: Selector, interval: timedelta) -> bool:
        user = self.store.get_user(username)
        if user is None:
            return False
        last = selector(user)
        if last is None:
            return True
        return self.clock() >= last + interval

    def time_remaining(self, last: Optional[datetime], interval: timedelta) -> str:
        if last is None:
            return '0'
        remaining = last + interval - self.clock()
        if remaining <= timedelta(0):
            return '0'
        total = math.ceil(remaining.total_seconds())
        return f'{total // 60}min {total % 60}sec'

    def _remaining_for(self, username: str, selector: Selector, interval: timedelta) -> str:
        user = self.store.get_user(username)
        if user is None:
            return '0'
        return self.time_remaining(selector(user), interval)

    # ---- checks ----
    def can_add_video(self, username: str) -> bool:
        return self.can_act(username, last_added_video, self.add_interval)

    def can_skip(self, username: str) -> bool:
        return self.can_act(username, last_skip, self.skip_interval)

    def can_remove(self, username: str) -> bool:
        return self.can_act(username, last_removed_video, REMOVE_INTERVAL)

    def can_stop_tracking(self, username: str) -> bool:
        return self.can_act(username, last_track_stop, TRACK_STOP_INTERVAL)

    def can_respond(self, username: str) -> bool:
        return self.can_act(username, last_response, self.response_interval)

    def time_to_next_video(self, username: str) -> str:
        return self._remaining_for(username, last_added_video, self.add_interval)

    def time_to_next_skip(self, username: str) -> str:
        return self._remaining_for(username, last_skip, self.skip_interval)

    def time_to_next_removal(self, username: str) -> str:
        return self._remaining_for(username, last_removed_video, REMOVE_INTERVAL)

    def time_to_next_track_stop(self, username: str) -> str:
        return self._remaining_for(username, last_track_stop, TRACK_STOP_INTERVAL)

    # ---- stamps ----
    def set_last_response(self, username: str) -> None:
        self.store.update_user(username, last_response=self.clock())

    def set_last_added_video(self, username: str, *, clear_notified: bool = True) -> None:
        fields = {'last_added_video': self.clock()}
        if clear_notified:
            fields['user_notified'] = False
        self.store.update_user(username, **fields)

    def set_last_skip(self, username: str) -> None:
        self.store.update_user(username, last_skip=self.clock())

    def set_last_removal(self, username: str) -> None:
        self.store.update_user(username, last_removed_video=self.clock())

    def set_last_track_stop(self, username: str) -> None:
        self.store.update_user(username, last_track_stop=self.clock())

    def reset_add_cooldown(self, username: str) -> None:
        self.store.update_user(username, last_added_video=self.clock() - timedelta(days=1))
