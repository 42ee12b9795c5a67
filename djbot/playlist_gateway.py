from __future__ import annotations
import logging
from typing import Optional, List, Dict, Any, Iterable
from dataclasses import dataclass, field

import aiohttp

logger = logging.getLogger(__name__)

# Inclusive bounds, in seconds, for a search hit to be queued.
MIN_DURATION = 1
MAX_DURATION = 399


class GatewayError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


def parse_duration(raw: object) -> int:
    """Seconds from "H:MM:SS", "M:SS", "S" or a number; 0 when empty or unparsable."""
    if raw is None:
        return 0
    if isinstance(raw, (int, float)):
        return max(int(raw), 0)
    text = str(raw).strip()
    if not text:
        return 0
    parts = text.split(':')
    if len(parts) > 3:
        return 0
    seconds = 0
    try:
        for part in parts:
            value = int(part)
            if value < 0:
                return 0
            seconds = seconds * 60 + value
    except ValueError:
        return 0
    return seconds


@dataclass
class QueueItem:
    video_id: str
    title: str
    duration: int = 0
    video_type: str = 'yt'
    username: str = ''
    uid: Optional[int] = None
    temp: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'QueueItem':
        link = data.get('link') or {}
        return cls(
            video_id=str(link.get('id') or ''),
            video_type=str(link.get('type') or 'yt'),
            title=str(data.get('title') or ''),
            duration=parse_duration(data.get('duration')),
            username=str(data.get('username') or ''),
            uid=data.get('uid'),
            temp=bool(data.get('temp')),
        )


@dataclass
class Playlist:
    queue: List[QueueItem] = field(default_factory=list)
    time: int = 0
    locked: bool = False
    paused: bool = False
    current_time: float = 0.0

    @property
    def head(self) -> Optional[QueueItem]:
        return self.queue[0] if self.queue else None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'Playlist':
        data = data or {}
        return cls(
            queue=[QueueItem.from_payload(item) for item in data.get('queue') or []],
            time=int(data.get('time') or 0),
            locked=bool(data.get('locked')),
            paused=bool(data.get('paused')),
            current_time=float(data.get('currentTime') or 0),
        )


@dataclass
class Candidate:
    id: str
    title: str
    duration: int
    channel: str = ''
    views: str = ''
    url_suffix: str = ''

    @property
    def link(self) -> str:
        return f"https://youtu.be/{self.id}"

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'Candidate':
        return cls(
            id=str(data.get('id') or ''),
            title=str(data.get('title') or ''),
            duration=parse_duration(data.get('duration')),
            channel=str(data.get('channel') or ''),
            views=str(data.get('views') or ''),
            url_suffix=str(data.get('urlSuffix') or ''),
        )


def select_candidate(candidates: Iterable[Candidate]) -> Optional[Candidate]:
    """First candidate, in upstream order, whose duration is within bounds."""
    for candidate in candidates:
        if MIN_DURATION <= candidate.duration <= MAX_DURATION:
            return candidate
    return None


class PlaylistGateway:
    def __init__(self, base_url: str, *, timeout: float = 15):
        self.base = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, params: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(method, url, params=params) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except Exception:
                        data = None
                    if isinstance(data, dict) and 'detail' in data:
                        detail = data['detail']
                    else:
                        detail = data or ''
                if not detail:
                    try:
                        detail = await r.text()
                    except Exception:
                        detail = ''
                raise GatewayError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def status(self) -> Optional[bool]:
        """Whether the room bot is enabled; ``None`` when the service is unreachable."""
        try:
            data = await self._req('GET', '/bot-status')
        except Exception as exc:
            logger.warning("Playlist service status unavailable: %s", exc)
            return None
        if not isinstance(data, dict) or 'botEnabled' not in data:
            return None
        return bool(data['botEnabled'])

    async def playlist(self) -> Playlist:
        return Playlist.from_payload(await self._req('GET', '/playlist'))

    async def search(self, phrase: str) -> List[Candidate]:
        data = await self._req('GET', '/search-video', {'query': phrase})
        if not isinstance(data, list):
            return []
        return [Candidate.from_payload(item) for item in data if isinstance(item, dict)]

    async def add_video(self, link: str):
        return await self._req('POST', '/add-video', {'link': link})

    async def skip(self):
        return await self._req('PUT', '/skip-song')

    async def remove_video(self, link: str) -> bool:
        try:
            await self._req('POST', '/remove-video', {'link': link})
        except Exception as exc:
            logger.warning("Failed to remove %s from playlist: %s", link, exc)
            return False
        return True

    async def send_message(self, message: str):
        return await self._req('POST', '/send-message', {'message': message})
