from __future__ import annotations
import os
import asyncio
import logging
from typing import Optional, Dict, List, Callable, Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import aiohttp
import uvicorn
from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

import store_app
from store_app import RecordStore
from djbot.settings import (
    DjSettings,
    LOG_LEVEL,
    PLAYLIST_URL,
    SPOTIFY_CLIENT_ID,
    SPOTIFY_CLIENT_SECRET,
    COMMANDS_FILE,
    MESSAGES_PATH,
    load_commands,
    load_messages,
)
from djbot.cooldowns import CooldownGuard
from djbot.playlist_gateway import PlaylistGateway
from djbot.skip_votes import SkipVoteCounter
from djbot.song_ledger import SongLedger
from djbot.commands import CommandRouter
from djbot.spotify_client import SpotifyClient
from djbot.spotify_tracker import SpotifyTracker
from djbot.scheduler import PeriodicReconciler

logger = logging.getLogger(__name__)

# ---- Env ----
TWITCH_CLIENT_ID_ENV = os.getenv('TWITCH_CLIENT_ID')
TWITCH_CLIENT_SECRET_ENV = os.getenv('TWITCH_CLIENT_SECRET')
TWITCH_ACCESS_TOKEN_ENV = os.getenv('TWITCH_ACCESS_TOKEN')
TWITCH_REFRESH_TOKEN_ENV = os.getenv('TWITCH_REFRESH_TOKEN')
BOT_LOGIN_ENV = os.getenv('BOT_LOGIN')
BOT_USER_ID_ENV = os.getenv('BOT_USER_ID') or os.getenv('TWITCH_BOT_USER_ID')
CHANNEL_ID_ENV = os.getenv('CHANNEL_ID')
BOT_ENABLED_ENV = os.getenv('BOT_ENABLED', '').lower() in ('1', 'true', 'yes')
TWITCH_SCOPES_ENV = os.getenv('TWITCH_SCOPES', 'user:read:chat user:write:chat user:bot user:manage:whispers')
# Admin API port; 0 keeps it off.
ADMIN_HOST = os.getenv('ADMIN_HOST', '0.0.0.0')
ADMIN_PORT = int(os.getenv('ADMIN_PORT', '7070') or 0)


@dataclass
class BotSettings:
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    login: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    bot_user_id: Optional[str] = None
    channel_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    enabled: bool = False
    error: Optional[str] = None

    def missing(self) -> List[str]:
        values = {
            'access_token': self.token,
            'refresh_token': self.refresh_token,
            'login': self.login,
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'bot_user_id': self.bot_user_id,
            'channel_id': self.channel_id,
        }
        return [name for name, value in values.items() if not value]


def _env_credentials() -> Dict[str, Optional[str]]:
    return {
        'access_token': TWITCH_ACCESS_TOKEN_ENV,
        'refresh_token': TWITCH_REFRESH_TOKEN_ENV,
        'login': BOT_LOGIN_ENV,
        'client_id': TWITCH_CLIENT_ID_ENV,
        'client_secret': TWITCH_CLIENT_SECRET_ENV,
        'bot_user_id': BOT_USER_ID_ENV,
        'channel_id': CHANNEL_ID_ENV,
    }


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


# ---- helpers ----
async def is_banned(session: aiohttp.ClientSession, url: str, text: str) -> bool:
    """Ask a pajbot-style endpoint whether ``text`` contains a banned phrase.

    Any failure counts as not banned.
    """
    try:
        async with session.post(url, json={'message': text}, timeout=8) as r:
            if r.status == 200:
                data = await r.json(content_type=None)
                return bool((data or {}).get('banned'))
            logger.warning("Ban phrase check returned %s", r.status)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.warning("Ban phrase check failed: %s", exc)
    return False


class DjBot(commands.Bot):
    """Twitch side of the bot: one channel, chat in, chat and whispers out."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        login: str,
        channel_id: str,
        scopes: List[str],
        enabled: bool = True,
        store: RecordStore,
        gateway: PlaylistGateway,
        spotify: SpotifyClient,
        settings: Optional[DjSettings] = None,
        messages: Optional[Dict[str, str]] = None,
        commands_map: Optional[Dict[str, List[str]]] = None,
        on_tokens: Optional[Callable[[str, str], None]] = None,
    ):
        if not token or not refresh_token or not login or not bot_id or not channel_id:
            raise RuntimeError('token, refresh_token, login, bot_id and channel_id are required')
        self.commands_map = commands_map or load_commands(COMMANDS_FILE)
        self.messages = messages or load_messages(MESSAGES_PATH)
        prefix = self.commands_map['prefix'][0]
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self.ready_event = asyncio.Event()
        self.enabled = enabled
        self._configured_login = login
        self.bot_user_id = str(bot_id)
        self.channel_id = str(channel_id)
        self._user_token = token
        self._refresh_token = refresh_token
        self._scopes = list(scopes or [])
        self._chatter_ids: Dict[str, str] = {}
        self._subscribed = False
        self.on_tokens = on_tokens
        self._live = False
        self._live_checked_at: Optional[datetime] = None

        self.store = store
        self.gateway = gateway
        self.spotify = spotify
        self.dj_settings = settings or DjSettings.from_env()
        self.cooldowns = CooldownGuard(store, self.dj_settings)
        self.ledger = SongLedger(store, gateway)
        self.skip_votes = SkipVoteCounter(store, self.dj_settings.skip_threshold)
        self.router = CommandRouter(
            store=store,
            gateway=gateway,
            cooldowns=self.cooldowns,
            ledger=self.ledger,
            skip_votes=self.skip_votes,
            chat=self,
            settings=self.dj_settings,
            messages=self.messages,
            commands_map=self.commands_map,
            is_live=self.stream_is_live if self.dj_settings.stream_login else None,
        )
        self.tracker = SpotifyTracker(
            store=store,
            cooldowns=self.cooldowns,
            spotify=spotify,
            add_video=self.router.add_video,
            chat=self,
            settings=self.dj_settings,
            messages=self.messages,
        )
        self.router.tracker = self.tracker
        self.reconciler = PeriodicReconciler(
            store=store,
            gateway=gateway,
            ledger=self.ledger,
            cooldowns=self.cooldowns,
            skip_votes=self.skip_votes,
            chat=self,
            messages=self.messages,
        )

    @property
    def configured_login(self) -> Optional[str]:
        return self._configured_login

    # ---- tokens ----
    async def load_tokens(self, path: Optional[str] = None) -> None:
        if not self._user_token or not self._refresh_token:
            raise RuntimeError('Bot credentials are unavailable')
        payload = await super().add_token(self._user_token, self._refresh_token)
        self._scopes = list(payload.scopes)
        self._persist_tokens(
            access_token=self._user_token,
            refresh_token=self._refresh_token,
            expires_in=payload.expires_in,
        )

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens live in the store.
        return None

    def _persist_tokens(self, *, access_token: str, refresh_token: str, expires_in: Optional[int]) -> None:
        if self.on_tokens:
            self.on_tokens(access_token, refresh_token)
        expires_at: Optional[datetime] = None
        if expires_in is not None:
            expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in))
        try:
            self.store.update_bot_config(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        except Exception:
            logger.exception("Failed to persist bot tokens")

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        user_id = getattr(payload, 'user_id', None)
        if user_id is not None and str(user_id) != self.bot_user_id:
            return
        self._user_token = payload.token
        self._refresh_token = payload.refresh_token
        self._scopes = list(payload.scopes)
        self._persist_tokens(
            access_token=payload.token,
            refresh_token=payload.refresh_token,
            expires_in=payload.expires_in,
        )

    # ---- lifecycle ----
    async def event_ready(self) -> None:
        logger.info("Connected to Twitch as %s", self._configured_login)
        await self._subscribe()
        if self.enabled:
            await self.reconciler.start()
        self.ready_event.set()

    async def _subscribe(self) -> None:
        if self._subscribed:
            return
        payloads = [
            eventsub.ChatMessageSubscription(
                broadcaster_user_id=self.channel_id,
                user_id=self.bot_user_id,
            ),
            eventsub.WhisperReceivedSubscription(user_id=self.bot_user_id),
        ]
        for payload in payloads:
            try:
                await self.subscribe_websocket(payload=payload, as_bot=True)
            except Exception:
                logger.exception("Subscribing to %s failed", type(payload).__name__)
        self._subscribed = True

    async def update_enabled(self, enabled: bool) -> None:
        if self.enabled == enabled:
            return
        self.enabled = enabled
        await self.ready_event.wait()
        if not enabled:
            logger.info("Disabling bot")
            await self.tracker.shutdown()
            await self.reconciler.stop()
        else:
            logger.info("Enabling bot")
            await self.reconciler.start()

    async def shutdown(self) -> None:
        await self.tracker.shutdown()
        await self.reconciler.stop()
        await super().close()
        await self.gateway.close()
        await self.spotify.close()

    # ---- chat out ----
    async def send(self, message: str) -> None:
        if self.dj_settings.banphrase_url:
            if not self.gateway.session:
                await self.gateway.start()
            if await is_banned(self.gateway.session, self.dj_settings.banphrase_url, message):
                logger.info("Banned phrase in outgoing message: %r", message)
                message = self.messages['banned_phrase']
        try:
            partial = self.create_partialuser(self.channel_id)
            await partial.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
            )
            logger.debug("Sent message: %s", message)
        except Exception as exc:
            logger.error("Failed to send message: %s", exc)

    async def stream_is_live(self) -> bool:
        login = self.dj_settings.stream_login
        if not login:
            return False
        now = datetime.utcnow()
        max_age = timedelta(seconds=self.dj_settings.stream_check_seconds)
        if self._live_checked_at is not None and now - self._live_checked_at < max_age:
            return self._live
        try:
            streams = [stream async for stream in self.fetch_streams(user_logins=[login], max_results=1)]
        except Exception as exc:
            logger.warning("Stream lookup for %s failed: %s", login, exc)
            streams = []
        if bool(streams) != self._live:
            logger.info("%s is %s; commands %s", login, "live" if streams else "offline", "paused" if streams else "resumed")
        self._live = bool(streams)
        self._live_checked_at = now
        return self._live

    async def whisper(self, username: str, message: str) -> None:
        user_id = await self._chatter_id(username)
        bot_user = self.create_partialuser(self.bot_user_id)
        await bot_user.send_whisper(to_user=user_id, message=message)

    async def _chatter_id(self, username: str) -> str:
        key = username.lower()
        if key in self._chatter_ids:
            return self._chatter_ids[key]
        users = await self.fetch_users(logins=[key])
        if not users:
            raise RuntimeError(f'Unknown Twitch user {username}')
        self._chatter_ids[key] = str(users[0].id)
        return self._chatter_ids[key]

    # ---- chat in ----
    async def event_message(self, message) -> None:
        if not self.enabled:
            return
        chatter = message.chatter
        chatter_id = getattr(chatter, 'id', None)
        if chatter_id is not None and str(chatter_id) == self.bot_user_id:
            return
        username = getattr(chatter, 'name', None) or ''
        text = (message.text or '').strip()
        if not username or not text:
            return
        if chatter_id is not None:
            self._chatter_ids[username.lower()] = str(chatter_id)
        await self._relay(username, text)
        try:
            await self.router.handle_line(username, text)
        except Exception:
            logger.exception("Handling %r from %s failed", text, username)

    async def _relay(self, username: str, text: str) -> None:
        if await self.gateway.status() is None:
            return
        try:
            await self.gateway.send_message(f"{username}: {text}")
        except Exception as exc:
            logger.debug("Relay to playlist chat failed: %s", exc)

    async def event_message_whisper(self, payload) -> None:
        sender = payload.sender
        username = getattr(sender, 'name', None) or ''
        if not username:
            return
        if getattr(sender, 'id', None) is not None:
            self._chatter_ids[username.lower()] = str(sender.id)
        if not self.tracker.accept_token_message(username, payload.text):
            return
        try:
            await self.whisper(username, self.messages['spotify_connected'])
        except Exception:
            logger.exception("Failed to confirm Spotify connection to %s", username)


class BotService:
    """Keeps one DjBot running that matches the stored bot configuration."""

    def __init__(
        self,
        store: RecordStore,
        *,
        gateway: Optional[PlaylistGateway] = None,
        spotify: Optional[SpotifyClient] = None,
        settings: Optional[DjSettings] = None,
        admin_app=None,
        poll_interval: int = 15,
        bot_factory: Optional[Callable[..., DjBot]] = None,
        task_factory: Optional[Callable[[Awaitable], asyncio.Task]] = None,
    ):
        self.store = store
        self.gateway = gateway or PlaylistGateway(PLAYLIST_URL)
        self.spotify = spotify or SpotifyClient(SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET)
        self.settings = settings or DjSettings.from_env()
        self.admin_app = admin_app
        self.poll_interval = poll_interval
        self.bot_factory = bot_factory or (
            lambda **kwargs: DjBot(
                store=self.store,
                gateway=self.gateway,
                spotify=self.spotify,
                settings=self.settings,
                on_tokens=self._tokens_refreshed,
                **kwargs,
            )
        )
        self._create_task = task_factory or asyncio.create_task
        self._bot: Optional[DjBot] = None
        self._bot_task: Optional[asyncio.Task] = None
        self._current: Optional[tuple] = None
        self._credentials_available: Optional[bool] = None
        self._last_enabled: Optional[bool] = None

    async def run(self):
        while True:
            try:
                raw_config = self.store.get_bot_config()
            except Exception as exc:
                logger.error("Failed to read bot configuration: %s", exc)
                raw_config = {}
            settings = self._settings_from_config(raw_config)
            try:
                await self.apply_settings(settings)
            except Exception as exc:
                logger.error("Failed to apply bot configuration: %s", exc)
            await asyncio.sleep(self.poll_interval)

    async def apply_settings(self, settings: BotSettings):
        missing = settings.missing()
        if missing:
            if self._credentials_available is not False:
                logger.error(
                    "Bot credentials are unavailable; idling worker (%s)",
                    settings.error or f"missing {', '.join(missing)}",
                )
            self._credentials_available = False
            self._last_enabled = None
            await self._stop_bot(reason='missing_credentials')
            return
        if self._credentials_available is not True:
            logger.info("Bot credentials resolved")
        self._credentials_available = True

        if not settings.enabled:
            if self._last_enabled is not False:
                logger.info("Bot disabled; idling")
            self._last_enabled = False
            await self._stop_bot(reason='disabled')
            return
        if self._last_enabled is not True:
            logger.info("Bot enabled")
        self._last_enabled = True

        token = _format_token(settings.token)
        identity = (
            token,
            settings.refresh_token,
            settings.login,
            settings.client_id,
            settings.client_secret,
            settings.bot_user_id,
            settings.channel_id,
            tuple(sorted(settings.scopes or [])),
        )
        if self._bot is None or identity != self._current:
            await self._restart_bot(settings, token=token)
            self._current = identity
        else:
            await self._bot.update_enabled(settings.enabled)

    def _tokens_refreshed(self, token: str, refresh_token: str) -> None:
        # A refresh by the running bot must not look like a config change.
        if self._current:
            self._current = (token, refresh_token, *self._current[2:])

    async def _restart_bot(self, settings: BotSettings, *, token: str):
        await self._stop_bot(reason='restarting')
        logger.info("Connecting bot as %s", settings.login)
        bot = self.bot_factory(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=settings.bot_user_id,
            token=token,
            refresh_token=settings.refresh_token,
            login=settings.login,
            channel_id=settings.channel_id,
            scopes=settings.scopes or [],
            enabled=settings.enabled,
        )
        self._bot = bot
        if self.admin_app is not None:
            self.admin_app.state.chat = bot.send
        self._bot_task = self._create_task(bot.start())

    async def _stop_bot(self, *, reason: Optional[str] = None):
        if not self._bot:
            return
        if self.admin_app is not None:
            self.admin_app.state.chat = None
        try:
            await self._bot.shutdown()
        except Exception as exc:
            logger.error("Error while stopping bot: %s", exc)
        if self._bot_task:
            try:
                await self._bot_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Bot task ended with %s", exc)
        self._bot = None
        self._bot_task = None
        self._current = None
        if reason:
            logger.info("Bot stopped (%s)", reason)

    async def shutdown(self):
        await self._stop_bot(reason='shutdown')
        await self.gateway.close()
        await self.spotify.close()

    def _settings_from_config(self, data: Dict[str, object]) -> BotSettings:
        config = data or {}
        if not isinstance(config, dict):
            return BotSettings(error='Invalid bot configuration payload')

        creds = {key: config.get(key) or fallback for key, fallback in _env_credentials().items()}
        raw_scopes = config.get('scopes') or TWITCH_SCOPES_ENV
        if isinstance(raw_scopes, str):
            scopes = raw_scopes.split()
        else:
            scopes = [str(scope) for scope in raw_scopes if scope]
        settings = BotSettings(
            token=creds['access_token'],
            refresh_token=creds['refresh_token'],
            login=creds['login'],
            client_id=creds['client_id'],
            client_secret=creds['client_secret'],
            bot_user_id=str(creds['bot_user_id']) if creds['bot_user_id'] else None,
            channel_id=str(creds['channel_id']) if creds['channel_id'] else None,
            scopes=scopes,
            enabled=bool(config.get('enabled')) or BOT_ENABLED_ENV,
        )
        missing = settings.missing()
        if missing:
            return BotSettings(error='Missing bot credentials: ' + ', '.join(missing))
        return settings


def setup_logging() -> None:
    level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        datefmt='[%Y-%m-%d %H:%M:%S]',
    )
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)


# ---- entry ----
async def main():
    setup_logging()
    store = store_app.app.state.store
    cleared = store.clear_tracking_flags()
    if cleared:
        logger.info("Cleared %d stale Spotify tracking flags", cleared)
    service = BotService(store, admin_app=store_app.app)
    jobs = [service.run()]
    if ADMIN_PORT:
        config = uvicorn.Config(store_app.app, host=ADMIN_HOST, port=ADMIN_PORT, log_config=None)
        jobs.append(uvicorn.Server(config).serve())
    try:
        await asyncio.gather(*jobs)
    finally:
        await service.shutdown()


if __name__ == '__main__':
    asyncio.run(main())
