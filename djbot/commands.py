from __future__ import annotations
import re
import asyncio
import logging
import unicodedata
from enum import Enum
from typing import Optional, Dict, List, Callable, Awaitable, Protocol
from dataclasses import dataclass, field

import aiohttp

from store_app import RecordStore
from djbot.settings import DjSettings, DEFAULT_COMMANDS, DEFAULT_MESSAGES
from djbot.cooldowns import CooldownGuard
from djbot.playlist_gateway import PlaylistGateway, GatewayError, select_candidate
from djbot.skip_votes import SkipVoteCounter
from djbot.song_ledger import SongLedger, format_wait

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (GatewayError, aiohttp.ClientError, asyncio.TimeoutError)

ADDED_TITLE_LIMIT = 50
PLAYLIST_TITLE_LIMIT = 20
PLAYLIST_PREVIEW = 3
MY_SONGS_PREVIEW = 3
MESSAGE_LIMIT = 150

_NON_ALNUM = re.compile(r'[^0-9A-Za-z]')


class Chat(Protocol):
    async def send(self, message: str) -> None: ...

    async def whisper(self, username: str, message: str) -> None: ...


class Command(Enum):
    LINK = 'link'
    SEARCH = 'search'
    RANDOM = 'random'
    HELP = 'help'
    PLAYLIST = 'playlist'
    SKIP = 'skip'
    UNDO = 'undo'
    MY_SONGS = 'my_songs'
    CONNECT = 'connect'
    TRACK = 'track'
    CURRENT = 'current'
    UNKNOWN = 'unknown'


@dataclass
class ParsedCommand:
    command: Command
    token: str
    params: List[str] = field(default_factory=list)


def detect_command(text: str, prefix: str = ';') -> Optional[str]:
    first = text.split(' ')[0]
    return first if first.startswith(prefix) else None


def parse_command(text: str, commands_map: Dict[str, List[str]]) -> ParsedCommand:
    prefix = commands_map.get('prefix', [';'])[0]
    token, *params = text.split(' ')
    name = token[len(prefix):]
    command = Command.UNKNOWN
    for candidate in Command:
        if name in commands_map.get(candidate.value, []):
            command = candidate
            break
    return ParsedCommand(command=command, token=token, params=[p for p in params if p])


def normalize_title(title: str) -> str:
    decomposed = unicodedata.normalize('NFD', title or '')
    stripped = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(' ', stripped)


class CommandRouter:
    """Turns one chat line into at most one playlist action and its reply."""

    def __init__(
        self,
        *,
        store: RecordStore,
        gateway: PlaylistGateway,
        cooldowns: CooldownGuard,
        ledger: SongLedger,
        skip_votes: SkipVoteCounter,
        chat: Chat,
        settings: DjSettings,
        messages: Optional[Dict[str, str]] = None,
        commands_map: Optional[Dict[str, List[str]]] = None,
        tracker=None,
        is_live: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.cooldowns = cooldowns
        self.ledger = ledger
        self.skip_votes = skip_votes
        self.chat = chat
        self.settings = settings
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.commands_map = commands_map or {k: list(v) for k, v in DEFAULT_COMMANDS.items()}
        self.prefix = self.commands_map.get('prefix', [';'])[0]
        self.tracker = tracker
        self.is_live = is_live
        self.handlers: Dict[Command, Callable[[str, ParsedCommand], Awaitable[None]]] = {
            Command.LINK: self.handle_link,
            Command.SEARCH: self.handle_search,
            Command.RANDOM: self.handle_random,
            Command.HELP: self.handle_help,
            Command.PLAYLIST: self.handle_playlist,
            Command.SKIP: self.handle_skip,
            Command.UNDO: self.handle_undo,
            Command.MY_SONGS: self.handle_my_songs,
            Command.CONNECT: self.handle_connect,
            Command.TRACK: self.handle_track,
            Command.CURRENT: self.handle_current,
            Command.UNKNOWN: self.handle_unknown,
        }
        missing = set(Command) - set(self.handlers)
        if missing:
            raise RuntimeError(f"No handler for {', '.join(sorted(c.value for c in missing))}")

    def format(self, key: str, **values) -> str:
        return self.messages[key].format(**values)

    async def say(self, key: str, **values) -> None:
        await self.chat.send(self.format(key, **values))

    async def handle_line(self, username: str, text: str) -> Optional[Command]:
        text = (text or '').strip()
        if not username or not text:
            return None
        if self.is_live is not None and await self.is_live():
            return None
        if text.startswith(self.settings.bot_mention):
            await self.say('identify', username=username)
            return None
        if detect_command(text, self.prefix) is None:
            return None
        self.store.get_or_create_user(username)
        if not self.cooldowns.can_respond(username):
            return None
        self.cooldowns.set_last_response(username)
        parsed = parse_command(text, self.commands_map)
        logger.info("%s -> %s %s", username, parsed.command.value, ' '.join(parsed.params))
        await self.handlers[parsed.command](username, parsed)
        return parsed.command

    # ---- add video ----
    async def add_video(self, username: str, phrase: str, *, quiet: bool = False) -> bool:
        """Search, queue the first fitting hit and record it.

        ``quiet`` suppresses every chat reply and leaves the notified flag
        alone; the Spotify tracker adds through this path.
        """
        if not self.cooldowns.can_add_video(username):
            if not quiet:
                await self.say(
                    'add_cooldown',
                    username=username,
                    minutes=self.settings.add_video_minutes,
                    remaining=self.cooldowns.time_to_next_video(username),
                )
            return False
        enabled = await self.gateway.status()
        if not enabled:
            if not quiet:
                await self.say('resetting', username=username)
            return False
        try:
            candidates = await self.gateway.search(phrase)
        except GATEWAY_ERRORS as exc:
            logger.warning("Search for %r failed: %s", phrase, exc)
            candidates = []
        hit = select_candidate(candidates)
        if hit is None:
            self.cooldowns.set_last_added_video(username, clear_notified=not quiet)
            if not quiet:
                await self.say('no_results', username=username)
            return False
        try:
            await self.gateway.add_video(hit.link)
        except GATEWAY_ERRORS as exc:
            logger.warning("Adding %s failed: %s", hit.link, exc)
            if not quiet:
                await self.say('resetting', username=username)
            return False
        title = normalize_title(hit.title)[:ADDED_TITLE_LIMIT]
        self.ledger.add_user_song(username, hit.link, title)
        self.cooldowns.set_last_added_video(username, clear_notified=not quiet)
        logger.info("%s added %s (%s)", username, hit.link, title)
        if not quiet:
            await self.say('added', username=username, title=title)
        return True

    # ---- handlers ----
    async def handle_link(self, username: str, parsed: ParsedCommand) -> None:
        await self.chat.whisper(username, self.format('link_whisper', room_url=self.settings.room_url))
        await self.say('link_sent', username=username)

    async def handle_search(self, username: str, parsed: ParsedCommand) -> None:
        await self.add_video(username, ' '.join(parsed.params))

    async def handle_random(self, username: str, parsed: ParsedCommand) -> None:
        title = self.store.random_seed_title()
        if not title:
            await self.say('no_results', username=username)
            return
        await self.add_video(username, title)

    async def handle_help(self, username: str, parsed: ParsedCommand) -> None:
        await self.say('help', username=username)

    async def handle_unknown(self, username: str, parsed: ParsedCommand) -> None:
        await self.say('unknown', username=username)

    async def handle_playlist(self, username: str, parsed: ParsedCommand) -> None:
        try:
            playlist = await self.gateway.playlist()
        except GATEWAY_ERRORS as exc:
            logger.warning("Playlist unavailable: %s", exc)
            await self.say('resetting', username=username)
            return
        titles = ', '.join(item.title[:PLAYLIST_TITLE_LIMIT] for item in playlist.queue[:PLAYLIST_PREVIEW])
        await self.say('playlist', username=username, titles=titles)

    async def handle_skip(self, username: str, parsed: ParsedCommand) -> None:
        allowed = self.cooldowns.can_skip(username)
        votes = self.skip_votes.current()
        if not allowed:
            await self.say(
                'skip_cooldown',
                username=username,
                minutes=self.settings.skip_minutes,
                remaining=self.cooldowns.time_to_next_skip(username),
            )
            return
        count = self.skip_votes.increment()
        self.cooldowns.set_last_skip(username)
        logger.info("Skip vote from %s (%d -> %d of %d)", username, votes, count, self.skip_votes.threshold)
        if self.skip_votes.triggers_skip(count):
            try:
                await self.gateway.skip()
            except GATEWAY_ERRORS as exc:
                logger.warning("Skip failed: %s", exc)
                self.skip_votes.withdraw()
                await self.say('resetting', username=username)
                return
            await self.say('skipped')
        elif count < self.skip_votes.threshold:
            await self.say('skip_needed', username=username, needed=self.skip_votes.needed(count))
        else:
            await self.say('skip_pending', username=username)

    async def handle_undo(self, username: str, parsed: ParsedCommand) -> None:
        if not self.cooldowns.can_remove(username):
            await self.say(
                'undo_cooldown',
                username=username,
                remaining=self.cooldowns.time_to_next_removal(username),
            )
            return
        row = self.ledger.remove_most_recent_unplayed(username)
        if row is None:
            await self.say('undo_nothing', username=username)
            return
        if row.link and await self.gateway.remove_video(row.link):
            self.cooldowns.reset_add_cooldown(username)
            self.cooldowns.set_last_removal(username)
            self.store.update_user(username, user_notified=True)
            await self.say('undo_success', username=username, title=row.title)
            return
        self.store.mark_unplayed(row.id)
        await self.say('undo_failed', username=username)

    async def handle_my_songs(self, username: str, parsed: ParsedCommand) -> None:
        rows = self.ledger.unplayed_for(username)
        if not rows:
            await self.say('my_songs_empty', username=username)
            return
        try:
            playlist = await self.gateway.playlist()
        except GATEWAY_ERRORS as exc:
            logger.warning("Playlist unavailable: %s", exc)
            playlist = None
        parts = []
        for row in rows[:MY_SONGS_PREVIEW]:
            wait = self.ledger.estimate_wait(row.link, playlist) if playlist and row.link else None
            parts.append(f"{row.title} ({format_wait(wait)})" if wait is not None else f"{row.title} (not in queue)")
        songs = ', '.join(parts)
        if len(rows) > MY_SONGS_PREVIEW:
            songs += f" and {len(rows) - MY_SONGS_PREVIEW} more"
        message = self.format('my_songs', username=username, songs=songs)
        if len(message) > MESSAGE_LIMIT:
            message = message[:MESSAGE_LIMIT - 3] + '...'
        await self.chat.send(message)

    async def handle_connect(self, username: str, parsed: ParsedCommand) -> None:
        try:
            await self.chat.whisper(
                username,
                self.format('spotify_connect_whisper', auth_url=self.settings.spotify_auth_url),
            )
        except Exception:
            logger.exception("Failed to whisper Spotify instructions to %s", username)
            await self.say('spotify_connect_failed', username=username)
            return
        await self.say('spotify_connect_sent', username=username)

    async def handle_track(self, username: str, parsed: ParsedCommand) -> None:
        if self.tracker is None:
            await self.handle_unknown(username, parsed)
            return
        if parsed.params and parsed.params[0].lower() == 'stop':
            await self.tracker.stop(username)
        else:
            await self.tracker.start(username)

    async def handle_current(self, username: str, parsed: ParsedCommand) -> None:
        if self.tracker is None:
            await self.handle_unknown(username, parsed)
            return
        await self.tracker.add_current(username)
