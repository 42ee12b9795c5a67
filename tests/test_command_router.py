import os
import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

os.environ.setdefault("DB_URL", "sqlite://")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import store_app
from djbot.commands import Command, CommandRouter, detect_command, normalize_title, parse_command
from djbot.cooldowns import CooldownGuard
from djbot.playlist_gateway import Candidate, GatewayError, Playlist, QueueItem
from djbot.settings import DEFAULT_COMMANDS, DjSettings
from djbot.skip_votes import SkipVoteCounter
from djbot.song_ledger import SongLedger


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeChat:
    def __init__(self):
        self.sent = []
        self.whispers = []

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def whisper(self, username: str, message: str) -> None:
        self.whispers.append((username, message))


class ParseTests(unittest.TestCase):
    def test_detect_command_needs_prefix_on_first_word(self) -> None:
        self.assertEqual(detect_command(";search foo bar"), ";search")
        self.assertIsNone(detect_command("hello ;search"))
        self.assertIsNone(detect_command("search foo"))

    def test_parse_aliases_and_params(self) -> None:
        parsed = parse_command(";s never gonna", DEFAULT_COMMANDS)
        self.assertEqual(parsed.command, Command.SEARCH)
        self.assertEqual(parsed.params, ["never", "gonna"])
        self.assertEqual(parse_command(";where", DEFAULT_COMMANDS).command, Command.LINK)
        self.assertEqual(parse_command(";rg", DEFAULT_COMMANDS).command, Command.RANDOM)
        self.assertEqual(parse_command(";when", DEFAULT_COMMANDS).command, Command.MY_SONGS)
        self.assertEqual(parse_command(";nope", DEFAULT_COMMANDS).command, Command.UNKNOWN)

    def test_command_tokens_are_case_sensitive(self) -> None:
        self.assertEqual(parse_command(";S never gonna", DEFAULT_COMMANDS).command, Command.UNKNOWN)
        self.assertEqual(parse_command(";Search foo", DEFAULT_COMMANDS).command, Command.UNKNOWN)

    def test_normalize_title(self) -> None:
        self.assertEqual(normalize_title("Beyoncé - Halo!"), "Beyonce   Halo ")


class CommandRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.store = store_app.RecordStore(store_app.create_session_factory("sqlite://"), clock=self.clock)
        self.settings = DjSettings(
            add_video_minutes=2,
            skip_minutes=2,
            response_seconds=5,
            skip_threshold=5,
            room_url="https://cytu.be/r/room",
        )
        self.gateway = AsyncMock()
        self.gateway.status.return_value = True
        self.gateway.search.return_value = [
            Candidate(id="live", title="Intro", duration=0),
            Candidate(id="vid1", title="Forsen - Song", duration=150),
        ]
        self.gateway.remove_video.return_value = True
        self.gateway.playlist.return_value = Playlist(queue=[])
        self.chat = FakeChat()
        self.cooldowns = CooldownGuard(self.store, self.settings)
        self.ledger = SongLedger(self.store, self.gateway)
        self.votes = SkipVoteCounter(self.store, self.settings.skip_threshold)
        self.tracker = AsyncMock()
        self.router = CommandRouter(
            store=self.store,
            gateway=self.gateway,
            cooldowns=self.cooldowns,
            ledger=self.ledger,
            skip_votes=self.votes,
            chat=self.chat,
            settings=self.settings,
            tracker=self.tracker,
        )

    async def test_plain_chat_is_ignored(self) -> None:
        self.assertIsNone(await self.router.handle_line("alice", "hello there"))
        self.assertEqual(self.chat.sent, [])
        self.assertIsNone(self.store.get_user("alice"))

    async def test_mention_gets_identity_line(self) -> None:
        await self.router.handle_line("alice", "!djfors_ who are you")
        self.assertEqual(self.chat.sent, ["docJAM @alice bot made by veccvs"])

    async def test_help_and_unknown(self) -> None:
        await self.router.handle_line("alice", ";help")
        self.clock.advance(seconds=5)
        await self.router.handle_line("alice", ";dance")
        self.assertEqual(
            self.chat.sent,
            [
                "docJAM @alice Commands: ;link, ;where, ;search, ;s, ;help, ;playlist, ;skip, ;rg, ;when, ;undo",
                "docJAM @alice Unknown command, try ;link, ;search or ;help",
            ],
        )

    async def test_response_throttle_is_silent(self) -> None:
        await self.router.handle_line("alice", ";help")
        self.clock.advance(seconds=2)
        self.assertIsNone(await self.router.handle_line("alice", ";help"))
        self.assertEqual(len(self.chat.sent), 1)

    async def test_link_whispers_room(self) -> None:
        await self.router.handle_line("alice", ";link")
        self.assertEqual(self.chat.whispers, [("alice", "https://cytu.be/r/room")])
        self.assertEqual(self.chat.sent, ["docJAM @alice I sent you a whisper with the link forsenCD "])

    async def test_search_adds_then_cooldown_then_undo(self) -> None:
        await self.router.handle_line("alice", ";search forsen song")

        self.gateway.search.assert_awaited_once_with("forsen song")
        self.gateway.add_video.assert_awaited_once_with("https://youtu.be/vid1")
        self.assertEqual(self.chat.sent[-1], "alice docJAM added Forsen   Song [...]")
        rows = self.ledger.unplayed_for("alice")
        self.assertEqual([r.link for r in rows], ["https://youtu.be/vid1"])

        self.clock.advance(seconds=30)
        await self.router.handle_line("alice", ";s another")
        self.assertEqual(
            self.chat.sent[-1],
            "docJAM @alice You can add a video every 2 minutes. Time to add next video: 1min 30sec",
        )
        self.assertEqual(self.gateway.add_video.await_count, 1)

        self.clock.advance(seconds=30)
        await self.router.handle_line("alice", ";undo")
        self.gateway.remove_video.assert_awaited_once_with("https://youtu.be/vid1")
        self.assertEqual(
            self.chat.sent[-1],
            "docJAM @alice Removed your song 'Forsen   Song'. You can add another song now.",
        )
        self.assertTrue(self.cooldowns.can_add_video("alice"))
        self.assertEqual(self.ledger.unplayed_for("alice"), [])

    async def test_undo_after_window_finds_nothing(self) -> None:
        await self.router.handle_line("alice", ";search forsen song")
        self.clock.advance(minutes=6)
        await self.router.handle_line("alice", ";undo")
        self.assertEqual(
            self.chat.sent[-1],
            "docJAM @alice You don't have any recently added songs to remove (must be within 5 minutes of adding)",
        )
        self.gateway.remove_video.assert_not_awaited()

    async def test_failed_undo_keeps_song(self) -> None:
        await self.router.handle_line("alice", ";search forsen song")
        self.gateway.remove_video.return_value = False
        self.clock.advance(seconds=10)
        await self.router.handle_line("alice", ";undo")
        self.assertEqual(self.chat.sent[-1], "docJAM @alice Error removing song from playlist. Please try again.")
        self.assertEqual(len(self.ledger.unplayed_for("alice")), 1)
        self.assertFalse(self.cooldowns.can_add_video("alice"))

    async def test_search_without_fitting_results(self) -> None:
        self.gateway.search.return_value = [Candidate(id="long", title="Mix", duration=3600)]
        await self.router.handle_line("alice", ";search mix")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM No results found")
        self.gateway.add_video.assert_not_awaited()
        self.assertFalse(self.cooldowns.can_add_video("alice"))

    async def test_disabled_playlist_bot_asks_to_wait(self) -> None:
        self.gateway.status.return_value = False
        await self.router.handle_line("alice", ";search x")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM Bot is resetting, wait a few seconds :)")
        self.gateway.search.assert_not_awaited()
        self.assertTrue(self.cooldowns.can_add_video("alice"))

    async def test_failed_add_does_not_stamp_cooldown(self) -> None:
        self.gateway.add_video.side_effect = GatewayError(500, "boom")
        await self.router.handle_line("alice", ";search x")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM Bot is resetting, wait a few seconds :)")
        self.assertTrue(self.cooldowns.can_add_video("alice"))
        self.assertEqual(self.ledger.unplayed_for("alice"), [])

    async def test_random_uses_seed_title(self) -> None:
        await self.router.handle_line("alice", ";rg")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM No results found")

        self.store.add_seed_title("forsen classics")
        self.clock.advance(seconds=5)
        await self.router.handle_line("alice", ";rg")
        self.gateway.search.assert_awaited_once_with("forsen classics")

    async def test_five_votes_skip_exactly_once(self) -> None:
        for name in ["u1", "u2", "u3", "u4"]:
            await self.router.handle_line(name, ";skip")
        self.gateway.skip.assert_not_awaited()
        self.assertEqual(self.chat.sent[0], "docJAM @u1 4 more skips needed to skip the video")
        self.assertEqual(self.chat.sent[3], "docJAM @u4 1 more skips needed to skip the video")

        await self.router.handle_line("u5", ";skip")
        self.gateway.skip.assert_awaited_once()
        self.assertEqual(self.chat.sent[-1], "docJAM skipped the video")

        await self.router.handle_line("u6", ";skip")
        self.gateway.skip.assert_awaited_once()
        self.assertEqual(self.chat.sent[-1], "docJAM @u6 the video is already being skipped")

    async def test_commands_ignored_while_stream_is_live(self) -> None:
        self.router.is_live = AsyncMock(return_value=True)
        self.assertIsNone(await self.router.handle_line("alice", ";help"))
        self.assertEqual(self.chat.sent, [])

        self.router.is_live.return_value = False
        self.assertEqual(await self.router.handle_line("alice", ";help"), Command.HELP)
        self.assertEqual(len(self.chat.sent), 1)

    async def test_failed_skip_gives_the_vote_back(self) -> None:
        self.gateway.skip.side_effect = GatewayError(503, "down")
        for name in ("u1", "u2", "u3", "u4", "u5"):
            await self.router.handle_line(name, ";skip")
        self.assertEqual(self.chat.sent[-1], "@u5 docJAM Bot is resetting, wait a few seconds :)")
        self.assertEqual(self.votes.current(), 4)

        self.gateway.skip.side_effect = None
        await self.router.handle_line("u6", ";skip")
        self.assertEqual(self.gateway.skip.await_count, 2)
        self.assertEqual(self.chat.sent[-1], "docJAM skipped the video")

    async def test_skip_cooldown_per_user(self) -> None:
        await self.router.handle_line("u1", ";skip")
        self.clock.advance(seconds=10)
        await self.router.handle_line("u1", ";skip")
        self.assertEqual(
            self.chat.sent[-1],
            "docJAM @u1 You can skip a video every 2 minutes, time to skip video: 1min 50sec",
        )
        self.assertEqual(self.votes.current(), 1)

    async def test_playlist_lists_first_titles(self) -> None:
        self.gateway.playlist.return_value = Playlist(
            queue=[
                QueueItem(video_id="a", title="A very long title that gets cut"),
                QueueItem(video_id="b", title="B"),
                QueueItem(video_id="c", title="C"),
                QueueItem(video_id="d", title="D"),
            ]
        )
        await self.router.handle_line("alice", ";playlist")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM Playlist: A very long title th, B, C")

    async def test_my_songs_reports_wait(self) -> None:
        await self.router.handle_line("alice", ";search forsen song")
        self.gateway.playlist.return_value = Playlist(
            queue=[
                QueueItem(video_id="other", title="Other", duration=200),
                QueueItem(video_id="vid1", title="Forsen - Song", duration=150),
            ],
            current_time=80,
        )
        self.clock.advance(seconds=5)
        await self.router.handle_line("alice", ";when")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM Your unplayed songs: Forsen   Song (02:00)")

    async def test_my_songs_empty(self) -> None:
        await self.router.handle_line("alice", ";when")
        self.assertEqual(self.chat.sent[-1], "@alice docJAM You don't have any unplayed songs")

    async def test_connect_whispers_instructions(self) -> None:
        await self.router.handle_line("alice", ";connect")
        self.assertEqual(len(self.chat.whispers), 1)
        self.assertIn(self.settings.spotify_auth_url, self.chat.whispers[0][1])
        self.assertEqual(
            self.chat.sent[-1],
            "docJAM @alice I've sent you a whisper with instructions to connect your Spotify account.",
        )

    async def test_track_and_current_go_to_tracker(self) -> None:
        await self.router.handle_line("alice", ";track")
        self.tracker.start.assert_awaited_once_with("alice")
        self.clock.advance(seconds=5)
        await self.router.handle_line("alice", ";track stop")
        self.tracker.stop.assert_awaited_once_with("alice")
        self.clock.advance(seconds=5)
        await self.router.handle_line("alice", ";current")
        self.tracker.add_current.assert_awaited_once_with("alice")

    async def test_quiet_add_sends_nothing(self) -> None:
        self.store.get_or_create_user("alice")
        self.store.update_user("alice", user_notified=True)
        added = await self.router.add_video("alice", "forsen song", quiet=True)
        self.assertTrue(added)
        self.assertEqual(self.chat.sent, [])
        self.assertTrue(self.store.get_user("alice").user_notified)


if __name__ == "__main__":
    unittest.main()
