import asyncio
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import discord

from jukebox.cogs.music import MusicCog, VoiceSink
from jukebox.exceptions import SinkError, TeardownError

BOT_ID = 1000


class VoiceSinkTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.guild = MagicMock()
        self.guild.voice_client = None
        self.channel = MagicMock()
        self.voice_client = MagicMock()
        self.voice_client.is_connected.return_value = True
        self.channel.connect = AsyncMock(return_value=self.voice_client)
        self.sink = VoiceSink(self.guild, self.channel)

    async def test_connect_joins_channel(self) -> None:
        self.assertFalse(self.sink.is_connected)

        await self.sink.connect()

        self.channel.connect.assert_awaited_once_with(self_deaf=True, timeout=20.0)
        self.assertTrue(self.sink.is_connected)

    async def test_connect_reuses_existing_voice_client(self) -> None:
        self.guild.voice_client = self.voice_client

        await self.sink.connect()

        self.channel.connect.assert_not_awaited()
        self.assertIs(self.sink.voice_client, self.voice_client)

    async def test_connect_failure_is_a_sink_error(self) -> None:
        self.channel.connect.side_effect = asyncio.TimeoutError()

        with self.assertRaises(SinkError):
            await self.sink.connect()

    async def test_play_reports_finish_on_the_loop(self) -> None:
        await self.sink.connect()
        on_finished = MagicMock()
        source = MagicMock()

        with patch.object(discord.FFmpegOpusAudio, "from_probe", new=AsyncMock(return_value=source)):
            await self.sink.play(Path("/cache/abc.webm"), on_finished)

        args, kwargs = self.voice_client.play.call_args
        self.assertIs(args[0], source)
        kwargs["after"](None)
        await asyncio.sleep(0)
        on_finished.assert_called_once_with(None)

    async def test_probe_failure_is_a_sink_error(self) -> None:
        await self.sink.connect()

        with patch.object(discord.FFmpegOpusAudio, "from_probe", new=AsyncMock(side_effect=OSError("no ffmpeg"))):
            with self.assertRaises(SinkError):
                await self.sink.play(Path("/cache/abc.webm"), MagicMock())

    async def test_disconnect_failure_is_a_teardown_error(self) -> None:
        await self.sink.connect()
        self.voice_client.disconnect = AsyncMock(side_effect=asyncio.TimeoutError())

        with self.assertRaises(TeardownError):
            await self.sink.disconnect()
        self.assertIsNone(self.sink.voice_client)

    async def test_old_sink_leaves_taken_over_voice_client_alone(self) -> None:
        owners = {}
        old = VoiceSink(self.guild, self.channel, owners)
        new = VoiceSink(self.guild, self.channel, owners)
        self.voice_client.disconnect = AsyncMock()
        self.voice_client.is_playing.return_value = True

        await old.connect()
        self.guild.voice_client = self.voice_client
        await new.connect()

        self.channel.connect.assert_awaited_once()
        self.assertIs(owners[self.guild.id], new)
        self.assertFalse(old.owns_voice)

        old.stop()
        await old.disconnect()
        self.voice_client.stop.assert_not_called()
        self.voice_client.disconnect.assert_not_awaited()

        await new.disconnect()
        self.voice_client.disconnect.assert_awaited_once_with(force=True)
        self.assertEqual(owners, {})


class PresenceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        bot = MagicMock()
        bot.user.id = BOT_ID
        self.cog = MusicCog(bot)
        self.cog.manager = MagicMock()
        self.cog.manager.teardown = AsyncMock()
        self.guild = SimpleNamespace(id=7)
        self.bot_member = SimpleNamespace(id=BOT_ID, bot=True, guild=self.guild)

    async def test_bot_disconnected_tears_down(self) -> None:
        channel = SimpleNamespace(members=[])

        await self.cog.on_voice_state_update(
            self.bot_member, SimpleNamespace(channel=channel), SimpleNamespace(channel=None)
        )

        self.cog.manager.teardown.assert_awaited_once()
        self.assertEqual(self.cog.manager.teardown.await_args.args[0], 7)

    async def test_last_listener_leaving_tears_down(self) -> None:
        channel = SimpleNamespace(members=[self.bot_member])
        listener = SimpleNamespace(id=1, bot=False, guild=self.guild)

        await self.cog.on_voice_state_update(
            listener, SimpleNamespace(channel=channel), SimpleNamespace(channel=None)
        )

        self.cog.manager.teardown.assert_awaited_once()

    async def test_listener_leaving_with_others_present_is_ignored(self) -> None:
        other = SimpleNamespace(id=2, bot=False, guild=self.guild)
        channel = SimpleNamespace(members=[self.bot_member, other])
        listener = SimpleNamespace(id=1, bot=False, guild=self.guild)

        await self.cog.on_voice_state_update(
            listener, SimpleNamespace(channel=channel), SimpleNamespace(channel=None)
        )

        self.cog.manager.teardown.assert_not_awaited()

    async def test_guild_without_player_is_ignored(self) -> None:
        self.cog.manager.get.return_value = None
        channel = SimpleNamespace(members=[])

        await self.cog.on_voice_state_update(
            self.bot_member, SimpleNamespace(channel=channel), SimpleNamespace(channel=None)
        )

        self.cog.manager.teardown.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
