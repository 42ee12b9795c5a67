from __future__ import annotations
import logging
from typing import Optional, Union, Dict, Any
from dataclasses import dataclass

import aiohttp

logger = logging.getLogger(__name__)

PLAYER_URL = 'https://api.spotify.com/v1/me/player/currently-playing'
TOKEN_URL = 'https://accounts.spotify.com/api/token'


class SpotifyError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


@dataclass
class NowPlaying:
    title: str
    url: Optional[str] = None


@dataclass
class TokenExpired:
    """The access token was rejected; a replacement was fetched with the refresh token."""
    access_token: str
    refresh_token: Optional[str] = None


PlayerResult = Union[None, NowPlaying, TokenExpired]


def now_playing_from_payload(data: Dict[str, Any]) -> Optional[NowPlaying]:
    item = (data or {}).get('item')
    if not isinstance(item, dict) or not item.get('name'):
        return None
    artists = ', '.join(a.get('name', '') for a in item.get('artists') or [] if a.get('name'))
    title = f"{artists} - {item['name']}" if artists else item['name']
    url = (item.get('external_urls') or {}).get('spotify')
    return NowPlaying(title=title, url=url)


class SpotifyClient:
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        player_url: str = PLAYER_URL,
        token_url: str = TOKEN_URL,
    ):
        self.client_id = client_id or ''
        self.client_secret = client_secret or ''
        self.player_url = player_url
        self.token_url = token_url
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def currently_playing(self, access_token: str, refresh_token: str) -> PlayerResult:
        """What the user is playing now.

        Returns ``None`` when nothing is playing and ``TokenExpired`` when the
        access token was refused, in which case the caller stores the new token
        and asks again on its next tick.
        """
        if not self.session:
            await self.start()
        headers = {'Authorization': f'Bearer {access_token}'}
        async with self.session.get(self.player_url, headers=headers) as r:
            if r.status == 204:
                return None
            if r.status == 401:
                logger.info("Spotify access token expired; refreshing")
                return await self.refresh(refresh_token)
            if r.status >= 400:
                raise SpotifyError(r.status, await r.text())
            body = await r.text()
            if not body.strip():
                return None
            data = await r.json(content_type=None)
        return now_playing_from_payload(data)

    async def refresh(self, refresh_token: str) -> TokenExpired:
        if not self.session:
            await self.start()
        form = {'grant_type': 'refresh_token', 'refresh_token': refresh_token}
        auth = aiohttp.BasicAuth(self.client_id, self.client_secret)
        async with self.session.post(self.token_url, data=form, auth=auth) as r:
            if r.status >= 400:
                raise SpotifyError(r.status, await r.text())
            data = await r.json(content_type=None)
        access_token = data.get('access_token')
        if not access_token:
            raise SpotifyError(r.status, 'refresh response missing access_token')
        return TokenExpired(access_token=access_token, refresh_token=data.get('refresh_token'))
