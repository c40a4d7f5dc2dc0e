import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from fakes import MIN_SIZE, FakeFetcher, FakeSink, wait_until

from jukebox.cache.references import ReferenceSet
from jukebox.cache.store import CacheStore
from jukebox.exceptions import EmptyQueueError, InvalidURLError, NotPlayingError
from jukebox.playback.manager import PlayerManager
from jukebox.playback.player import PlayerState

GUILD = 42
URL_A = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
URL_B = "https://youtu.be/9bZkp7q19f0"


class PlayerManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        cache_dir = Path(tmp.name)
        self.refs = ReferenceSet()
        self.fetcher = FakeFetcher(cache_dir)
        self.cache = CacheStore(cache_dir, self.refs, self.fetcher, min_size=MIN_SIZE)
        self.sinks: list[FakeSink] = []
        self.notify = AsyncMock()
        self.manager = PlayerManager(
            self.cache,
            self._make_sink,
            idle_timeout=60,
            notify=self.notify,
        )

    async def asyncTearDown(self) -> None:
        await self.manager.shutdown()

    def _make_sink(self, guild_id, voice_target) -> FakeSink:
        sink = FakeSink()
        self.sinks.append(sink)
        return sink

    async def test_invalid_url_creates_nothing(self) -> None:
        with self.assertRaises(InvalidURLError):
            await self.manager.play(GUILD, "https://open.spotify.com/track/abc", "alice", "voice")

        self.assertIsNone(self.manager.get(GUILD))
        self.assertEqual(self.sinks, [])
        self.assertEqual(sum(self.fetcher.calls.values()), 0)

    async def test_play_creates_player_and_starts_track(self) -> None:
        track = await self.manager.play(GUILD, URL_A, "alice", "voice")

        self.assertEqual(track.id, "dQw4w9WgXcQ")
        self.assertEqual(track.requested_by, "alice")
        player = self.manager.get(GUILD)
        await wait_until(lambda: len(self.sinks[0].plays) == 1)
        self.assertEqual(player.state, PlayerState.PLAYING)

        self.notify.assert_any_await(GUILD, "▶️ Now playing: https://www.youtube.com/watch?v=dQw4w9WgXcQ (requested by alice)")

    async def test_second_play_reuses_the_player(self) -> None:
        await self.manager.play(GUILD, URL_A, "alice", "voice")
        await self.manager.play(GUILD, URL_B, "bob", "voice")

        self.assertEqual(len(self.sinks), 1)
        await wait_until(lambda: len(self.manager.get(GUILD).songs) == 1)

    async def test_title_lookup_labels_track(self) -> None:
        youtube = MagicMock()
        youtube.get_title = AsyncMock(return_value="Never Gonna Give You Up - Rick Astley")
        self.manager.youtube = youtube

        track = await self.manager.play(GUILD, URL_A, "alice", "voice")

        youtube.get_title.assert_awaited_once_with("dQw4w9WgXcQ")
        self.assertEqual(track.label, "Never Gonna Give You Up - Rick Astley")

    async def test_slow_title_lookup_keeps_arrival_order(self) -> None:
        async def get_title(video_id):
            await asyncio.sleep(0.2 if video_id == "dQw4w9WgXcQ" else 0.01)
            return None

        youtube = MagicMock()
        youtube.get_title = AsyncMock(side_effect=get_title)
        self.manager.youtube = youtube

        await asyncio.gather(
            self.manager.play(GUILD, URL_A, "alice", "voice"),
            self.manager.play(GUILD, URL_B, "bob", "voice"),
        )
        await wait_until(lambda: len(self.sinks[0].plays) == 1)
        await wait_until(lambda: len(self.manager.get(GUILD).songs) == 1)

        self.assertEqual(self.sinks[0].plays[0].name, "dQw4w9WgXcQ.webm")
        self.assertEqual([t.id for t in self.manager.get(GUILD).songs], ["9bZkp7q19f0"])
        self.assertEqual(self.manager._arrivals, {})

    async def test_skip_without_player_raises(self) -> None:
        with self.assertRaises(NotPlayingError):
            self.manager.skip(GUILD)

    async def test_stop_removes_player(self) -> None:
        self.assertFalse(await self.manager.stop(GUILD))

        await self.manager.play(GUILD, URL_A, "alice", "voice")
        await wait_until(lambda: len(self.sinks[0].plays) == 1)

        self.assertTrue(await self.manager.stop(GUILD))
        self.assertIsNone(self.manager.get(GUILD))
        self.assertEqual(self.sinks[0].disconnects, 1)

    async def test_play_after_stop_creates_new_player(self) -> None:
        await self.manager.play(GUILD, URL_A, "alice", "voice")
        first = self.manager.get(GUILD)
        await self.manager.stop(GUILD)

        await self.manager.play(GUILD, URL_B, "alice", "voice")

        self.assertIsNot(self.manager.get(GUILD), first)
        self.assertEqual(len(self.sinks), 2)

    async def test_snapshot_lists_current_and_upcoming(self) -> None:
        with self.assertRaises(EmptyQueueError):
            self.manager.snapshot(GUILD)

        await self.manager.play(GUILD, URL_A, "alice", "voice")
        await self.manager.play(GUILD, URL_B, "bob", "voice")
        await wait_until(lambda: len(self.manager.get(GUILD).songs) == 1)

        current, upcoming = self.manager.snapshot(GUILD)
        self.assertEqual(current.id, "dQw4w9WgXcQ")
        self.assertEqual([t.id for t in upcoming], ["9bZkp7q19f0"])

    async def test_teardown_stops_guild(self) -> None:
        await self.manager.play(GUILD, URL_A, "alice", "voice")
        await wait_until(lambda: len(self.sinks[0].plays) == 1)

        await self.manager.teardown(GUILD, "everyone left")
        await self.manager.teardown(GUILD, "already gone")

        self.assertIsNone(self.manager.get(GUILD))
        self.assertEqual(self.sinks[0].disconnects, 1)

    async def test_idle_expiry_removes_player(self) -> None:
        self.manager.idle_timeout = 0.05
        await self.manager.play(GUILD, URL_A, "alice", "voice")
        await wait_until(lambda: len(self.sinks[0].plays) == 1)
        player = self.manager.get(GUILD)

        self.sinks[0].finish()
        await wait_until(lambda: self.manager.get(GUILD) is None)

        await wait_until(lambda: player.state is PlayerState.DRAINING)
        self.assertEqual(self.sinks[0].disconnects, 1)


if __name__ == "__main__":
    unittest.main()
