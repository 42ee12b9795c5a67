from __future__ import annotations
import os
import yaml
from typing import Dict, List, Optional
from dataclasses import dataclass
from pathlib import Path

# ---- Env ----
# Base URL of the playlist service (room bot + video search).
PLAYLIST_URL = os.getenv('PLAYLIST_URL', 'http://localhost:8080')
ROOM_URL = os.getenv('ROOM_URL', 'https://cytu.be/r/forsenboys')
BOT_MENTION = os.getenv('BOT_MENTION', '!djfors_')
SPOTIFY_CLIENT_ID = os.getenv('SPOTIFY_CLIENT_ID')
SPOTIFY_CLIENT_SECRET = os.getenv('SPOTIFY_CLIENT_SECRET')
SPOTIFY_AUTH_URL = os.getenv('SPOTIFY_AUTH_URL', 'https://spotify-auth-lilac.vercel.app/')
# Optional pajbot-style ban phrase endpoint; unset disables the check.
BANPHRASE_URL = os.getenv('BANPHRASE_URL')
# Commands are ignored while this channel is live; unset disables the gate.
STREAM_LOGIN = os.getenv('STREAM_LOGIN')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', '/bot/messages.yml'))
COMMANDS_FILE = os.getenv('COMMANDS_FILE', '/bot/commands.yml')

DEFAULT_COMMANDS = {
    'prefix': ';',
    'link': ['link', 'where'],
    'search': ['search', 's'],
    'random': ['rg'],
    'help': ['help'],
    'playlist': ['playlist'],
    'skip': ['skip'],
    'undo': ['undo'],
    'my_songs': ['when'],
    'connect': ['connect'],
    'track': ['track'],
    'current': ['current'],
}

DEFAULT_MESSAGES = {
    'identify': 'docJAM @{username} bot made by veccvs',
    'help': 'docJAM @{username} Commands: ;link, ;where, ;search, ;s, ;help, ;playlist, ;skip, ;rg, ;when, ;undo',
    'unknown': 'docJAM @{username} Unknown command, try ;link, ;search or ;help',
    'link_whisper': '{room_url}',
    'link_sent': 'docJAM @{username} I sent you a whisper with the link forsenCD ',
    'add_cooldown': 'docJAM @{username} You can add a video every {minutes} minutes. Time to add next video: {remaining}',
    'resetting': '@{username} docJAM Bot is resetting, wait a few seconds :)',
    'added': '{username} docJAM added {title} [...]',
    'no_results': '@{username} docJAM No results found',
    'playlist': '@{username} docJAM Playlist: {titles}',
    'skipped': 'docJAM skipped the video',
    'skip_needed': 'docJAM @{username} {needed} more skips needed to skip the video',
    'skip_cooldown': 'docJAM @{username} You can skip a video every {minutes} minutes, time to skip video: {remaining}',
    'skip_pending': 'docJAM @{username} the video is already being skipped',
    'undo_cooldown': 'docJAM @{username} You can remove a video every 5 minutes. Time to next removal: {remaining}',
    'undo_nothing': "docJAM @{username} You don't have any recently added songs to remove (must be within 5 minutes of adding)",
    'undo_success': "docJAM @{username} Removed your song '{title}'. You can add another song now.",
    'undo_failed': 'docJAM @{username} Error removing song from playlist. Please try again.',
    'my_songs': '@{username} docJAM Your unplayed songs: {songs}',
    'my_songs_empty': "@{username} docJAM You don't have any unplayed songs",
    'notify': '@{username} forsenJam you can add song now! forsenMaxLevel',
    'now_playing': 'docJAM now playing: {title}',
    'banned_phrase': 'docJAM banned phrase detected',
    'spotify_connect_whisper': 'To connect your Spotify account, please visit this URL: {auth_url} and authorize the application. After authorizing, send me the copied token',
    'spotify_connect_sent': "docJAM @{username} I've sent you a whisper with instructions to connect your Spotify account.",
    'spotify_connect_failed': 'docJAM @{username} Error connecting to Spotify. Please try again later.',
    'spotify_connected': 'Spotify account connected. Use ;track or ;current in chat.',
    'spotify_not_connected': 'docJAM @{username} You need to connect your Spotify account first. Use ;connect to get started.',
    'track_already': 'docJAM @{username} You are already tracking your Spotify songs. Use ;track stop to stop tracking.',
    'track_started': "docJAM @{username} Now tracking your Spotify. Songs will be added when you're eligible to add them (up to {max_songs} songs total).",
    'track_progress': 'docJAM @{username} Spotify tracker added song {count}/{max_songs}: {title}',
    'track_finished': 'docJAM @{username} Finished tracking. Added {count} songs to the playlist.',
    'track_idle': 'docJAM @{username} Stopped tracking after 10 minutes with no new songs. Added {count} songs to the playlist.',
    'track_error': 'docJAM @{username} Error tracking your Spotify songs. Please try again.',
    'track_not_running': 'docJAM @{username} You are not currently tracking your Spotify songs.',
    'track_stop_cooldown': 'docJAM @{username} You can stop tracking every 5 minutes. Time to next stop: {remaining}',
    'track_stopped': 'docJAM @{username} Stopped tracking your Spotify songs.',
    'current_added': 'docJAM @{username} Added song: {title}',
    'current_missing': 'docJAM @{username} No song is currently playing on your Spotify account or there was an error getting the song information.',
    'current_error': 'docJAM @{username} Error adding your current Spotify song. Please try again.',
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class DjSettings:
    add_video_minutes: int = 2
    skip_minutes: int = 2
    response_seconds: int = 5
    skip_threshold: int = 5
    max_tracked_songs: int = 5
    room_url: str = ROOM_URL
    bot_mention: str = BOT_MENTION
    spotify_auth_url: str = SPOTIFY_AUTH_URL
    banphrase_url: Optional[str] = None
    stream_login: Optional[str] = None
    stream_check_seconds: int = 60

    @classmethod
    def from_env(cls) -> 'DjSettings':
        return cls(
            add_video_minutes=_env_int('ADD_VIDEO_MINUTES', 2),
            skip_minutes=_env_int('SKIP_MINUTES', 2),
            response_seconds=_env_int('RESPONSE_SECONDS', 5),
            skip_threshold=_env_int('SKIP_THRESHOLD', 5),
            max_tracked_songs=_env_int('MAX_TRACKED_SONGS', 5),
            room_url=ROOM_URL,
            bot_mention=BOT_MENTION,
            spotify_auth_url=SPOTIFY_AUTH_URL,
            banphrase_url=BANPHRASE_URL,
            stream_login=STREAM_LOGIN,
            stream_check_seconds=_env_int('STREAM_CHECK_SECONDS', 60),
        )


def load_commands(path: str) -> Dict[str, List[str]]:
    cfg = DEFAULT_COMMANDS.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return {k: v if isinstance(v, list) else [v] for k, v in cfg.items()}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg
