import asyncio
import os
import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("DB_URL", "sqlite://")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import store_app
import djbot.bot_app as bot_app
from djbot.settings import DEFAULT_MESSAGES, DjSettings


def _settings(**overrides) -> bot_app.BotSettings:
    values = dict(
        token="abc",
        refresh_token="ref",
        login="djbot",
        client_id="client",
        client_secret="secret",
        bot_user_id="1",
        channel_id="42",
        scopes=["user:bot"],
        enabled=True,
    )
    values.update(overrides)
    return bot_app.BotSettings(**values)


class BotServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = store_app.RecordStore(store_app.create_session_factory("sqlite://"))
        self.admin_app = SimpleNamespace(state=SimpleNamespace(chat=None))
        self.created_bots: list[tuple[MagicMock, dict]] = []

        def _bot_factory(**kwargs):
            bot = MagicMock()
            bot.start = AsyncMock()
            bot.close = AsyncMock()
            bot.shutdown = AsyncMock()
            bot.update_enabled = AsyncMock()
            bot.send = AsyncMock()
            ready_event = asyncio.Event()
            ready_event.set()
            bot.ready_event = ready_event
            self.created_bots.append((bot, kwargs))
            return bot

        self.service = bot_app.BotService(
            self.store,
            gateway=AsyncMock(),
            spotify=AsyncMock(),
            settings=DjSettings(),
            admin_app=self.admin_app,
            bot_factory=_bot_factory,
            task_factory=asyncio.create_task,
        )

    async def test_apply_settings_starts_bot(self) -> None:
        await self.service.apply_settings(_settings())

        self.assertEqual(len(self.created_bots), 1)
        bot, kwargs = self.created_bots[0]
        self.assertEqual(kwargs["token"], "abc")
        self.assertEqual(kwargs["refresh_token"], "ref")
        self.assertEqual(kwargs["bot_id"], "1")
        self.assertEqual(kwargs["channel_id"], "42")
        self.assertEqual(kwargs["login"], "djbot")
        self.assertEqual(kwargs["scopes"], ["user:bot"])
        self.assertTrue(kwargs["enabled"])
        self.assertIs(self.admin_app.state.chat, bot.send)
        await asyncio.sleep(0)
        bot.start.assert_called()

    async def test_same_settings_do_not_restart(self) -> None:
        await self.service.apply_settings(_settings())
        await self.service.apply_settings(_settings())
        self.assertEqual(len(self.created_bots), 1)
        self.created_bots[0][0].update_enabled.assert_awaited_with(True)

    async def test_refreshed_tokens_do_not_restart(self) -> None:
        await self.service.apply_settings(_settings())
        self.service._tokens_refreshed("new-token", "new-refresh")
        await self.service.apply_settings(_settings(token="new-token", refresh_token="new-refresh"))
        self.assertEqual(len(self.created_bots), 1)

    async def test_changed_login_restarts(self) -> None:
        await self.service.apply_settings(_settings())
        await self.service.apply_settings(_settings(login="otherbot"))
        self.assertEqual(len(self.created_bots), 2)
        self.created_bots[0][0].shutdown.assert_awaited()

    async def test_disable_stops_running_bot(self) -> None:
        await self.service.apply_settings(_settings())
        bot = self.created_bots[0][0]

        await self.service.apply_settings(_settings(enabled=False))

        bot.shutdown.assert_awaited()
        bot.close.assert_not_awaited()
        self.assertIsNone(self.admin_app.state.chat)

    async def test_missing_credentials_idle_bot(self) -> None:
        with patch.object(bot_app, "TWITCH_ACCESS_TOKEN_ENV", None), \
            patch.object(bot_app, "TWITCH_REFRESH_TOKEN_ENV", None), \
            patch.object(bot_app, "BOT_LOGIN_ENV", None), \
            patch.object(bot_app, "TWITCH_CLIENT_ID_ENV", None), \
            patch.object(bot_app, "TWITCH_CLIENT_SECRET_ENV", None), \
            patch.object(bot_app, "BOT_USER_ID_ENV", None), \
            patch.object(bot_app, "CHANNEL_ID_ENV", None):
            settings = self.service._settings_from_config({})

        self.assertIsNone(settings.token)
        self.assertFalse(settings.enabled)
        self.assertEqual(
            settings.error,
            "Missing bot credentials: access_token, refresh_token, login, client_id, client_secret, bot_user_id, channel_id",
        )
        with self.assertLogs(bot_app.logger, level="ERROR") as logs:
            await self.service.apply_settings(settings)
        self.assertEqual(self.created_bots, [])
        self.assertIn("Missing bot credentials", logs.output[0])

    async def test_settings_fall_back_to_env_app_credentials(self) -> None:
        config = {
            "access_token": "token",
            "refresh_token": "refresh",
            "login": "djbot",
            "bot_user_id": "1",
            "channel_id": "42",
            "enabled": True,
        }
        with patch.object(bot_app, "TWITCH_CLIENT_ID_ENV", "env-client"), \
            patch.object(bot_app, "TWITCH_CLIENT_SECRET_ENV", "env-secret"):
            settings = self.service._settings_from_config(config)
        self.assertEqual(settings.client_id, "env-client")
        self.assertEqual(settings.client_secret, "env-secret")
        self.assertTrue(settings.enabled)
        self.assertIn("user:bot", settings.scopes)

    async def test_only_missing_fields_are_reported(self) -> None:
        config = {"access_token": "token", "refresh_token": "refresh", "login": "djbot", "bot_user_id": "1"}
        with patch.object(bot_app, "TWITCH_CLIENT_ID_ENV", "client"), \
            patch.object(bot_app, "TWITCH_CLIENT_SECRET_ENV", "secret"), \
            patch.object(bot_app, "CHANNEL_ID_ENV", None):
            settings = self.service._settings_from_config(config)
        self.assertEqual(settings.error, "Missing bot credentials: channel_id")
        self.assertEqual(settings.missing()[0], "access_token")
        self.assertEqual(self.service._settings_from_config(["bad"]).error, "Invalid bot configuration payload")

    async def test_run_reads_stored_config(self) -> None:
        self.store.update_bot_config(
            login="djbot",
            bot_user_id="1",
            channel_id="42",
            access_token="stored-token",
            refresh_token="stored-refresh",
            enabled=True,
        )
        self.service.apply_settings = AsyncMock()
        sleep_mock = AsyncMock(side_effect=asyncio.CancelledError())

        with patch.object(bot_app.asyncio, "sleep", sleep_mock), \
            patch.object(bot_app, "TWITCH_CLIENT_ID_ENV", "client"), \
            patch.object(bot_app, "TWITCH_CLIENT_SECRET_ENV", "secret"):
            with self.assertRaises(asyncio.CancelledError):
                await self.service.run()

        settings = self.service.apply_settings.call_args.args[0]
        self.assertEqual(settings.token, "stored-token")
        self.assertEqual(settings.refresh_token, "stored-refresh")
        self.assertEqual(settings.channel_id, "42")
        self.assertTrue(settings.enabled)


class DjBotTests(unittest.IsolatedAsyncioTestCase):
    def _bot(self) -> bot_app.DjBot:
        bot = bot_app.DjBot.__new__(bot_app.DjBot)
        bot.enabled = True
        bot.bot_user_id = "1"
        bot.channel_id = "42"
        bot.messages = dict(DEFAULT_MESSAGES)
        bot.dj_settings = DjSettings()
        bot._chatter_ids = {}
        bot._live = False
        bot._live_checked_at = None
        bot.gateway = AsyncMock()
        bot.gateway.status.return_value = True
        bot.router = AsyncMock()
        bot.tracker = MagicMock()
        return bot

    @staticmethod
    def _message(name: str, user_id: str, text: str):
        return SimpleNamespace(chatter=SimpleNamespace(name=name, id=user_id), text=text)

    async def test_chat_line_is_relayed_and_routed(self) -> None:
        bot = self._bot()
        await bot.event_message(self._message("alice", "7", ";search forsen"))
        bot.gateway.send_message.assert_awaited_once_with("alice: ;search forsen")
        bot.router.handle_line.assert_awaited_once_with("alice", ";search forsen")
        self.assertEqual(bot._chatter_ids, {"alice": "7"})

    async def test_relay_skipped_when_playlist_unreachable(self) -> None:
        bot = self._bot()
        bot.gateway.status.return_value = None
        await bot.event_message(self._message("alice", "7", "hello"))
        bot.gateway.send_message.assert_not_awaited()
        bot.router.handle_line.assert_awaited_once_with("alice", "hello")

    async def test_own_messages_are_ignored(self) -> None:
        bot = self._bot()
        await bot.event_message(self._message("djbot", "1", "docJAM hi"))
        bot.router.handle_line.assert_not_awaited()

    async def test_router_errors_are_logged(self) -> None:
        bot = self._bot()
        bot.router.handle_line.side_effect = RuntimeError("boom")
        with self.assertLogs(bot_app.logger, level="ERROR"):
            await bot.event_message(self._message("alice", "7", ";help"))

    async def test_send_replaces_banned_phrase(self) -> None:
        bot = self._bot()
        bot.dj_settings = DjSettings(banphrase_url="http://banphrase/api")
        partial = MagicMock()
        partial.send_message = AsyncMock()
        bot.create_partialuser = MagicMock(return_value=partial)

        with patch.object(bot_app, "is_banned", AsyncMock(return_value=True)):
            await bot.send("something rude")

        bot.create_partialuser.assert_called_once_with("42")
        partial.send_message.assert_awaited_once_with(
            "docJAM banned phrase detected",
            sender="1",
            token_for="1",
        )

    async def test_stream_lookup_is_cached(self) -> None:
        bot = self._bot()
        bot.dj_settings = DjSettings(stream_login="forsen", stream_check_seconds=60)
        lookups = []

        def _fetch_streams(**kwargs):
            lookups.append(kwargs)

            async def _streams():
                yield SimpleNamespace(user=SimpleNamespace(name="forsen"))

            return _streams()

        bot.fetch_streams = _fetch_streams

        self.assertTrue(await bot.stream_is_live())
        self.assertTrue(await bot.stream_is_live())
        self.assertEqual(lookups, [{"user_logins": ["forsen"], "max_results": 1}])

    async def test_stream_lookup_failure_lets_commands_through(self) -> None:
        bot = self._bot()
        bot.dj_settings = DjSettings(stream_login="forsen")
        bot.fetch_streams = MagicMock(side_effect=RuntimeError("helix down"))

        with self.assertLogs(bot_app.logger, level="WARNING"):
            self.assertFalse(await bot.stream_is_live())

    async def test_no_stream_login_means_never_live(self) -> None:
        bot = self._bot()
        bot.fetch_streams = MagicMock()
        self.assertFalse(await bot.stream_is_live())
        bot.fetch_streams.assert_not_called()

    async def test_whisper_looks_up_unknown_user(self) -> None:
        bot = self._bot()
        bot.fetch_users = AsyncMock(return_value=[SimpleNamespace(id=99)])
        bot_user = MagicMock()
        bot_user.send_whisper = AsyncMock()
        bot.create_partialuser = MagicMock(return_value=bot_user)

        await bot.whisper("Carol", "hello")

        bot.fetch_users.assert_awaited_once_with(logins=["carol"])
        bot.create_partialuser.assert_called_once_with("1")
        bot_user.send_whisper.assert_awaited_once_with(to_user="99", message="hello")

    async def test_token_whisper_confirms_connection(self) -> None:
        bot = self._bot()
        bot.tracker.accept_token_message.return_value = True
        bot.whisper = AsyncMock()
        payload = SimpleNamespace(sender=SimpleNamespace(name="carol", id="5"), text="token=a;refreshToken=b")

        await bot.event_message_whisper(payload)

        bot.tracker.accept_token_message.assert_called_once_with("carol", "token=a;refreshToken=b")
        bot.whisper.assert_awaited_once_with("carol", DEFAULT_MESSAGES["spotify_connected"])


if __name__ == "__main__":
    unittest.main()
