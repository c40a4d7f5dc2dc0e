import asyncio
import tempfile
import unittest
from pathlib import Path

from fakes import write_file

from jukebox.cache.references import ReferenceSet
from jukebox.cache.sweeper import CacheSweeper


class CacheSweeperTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.cache_dir = Path(tmp.name)
        self.refs = ReferenceSet()
        self.sweeper = CacheSweeper(self.cache_dir, self.refs, sweep_interval=0.05, wipe_interval=3600)

    async def test_sweep_keeps_protected_files(self) -> None:
        playing = write_file(self.cache_dir / "playing0000.webm")
        permanent = write_file(self.cache_dir / "permanent00.webm")
        downloading = write_file(self.cache_dir / "fetching000.webm.part")
        stale = write_file(self.cache_dir / "stale000000.webm")
        leftover = write_file(self.cache_dir / "crashed0000.webm.part")
        self.refs.acquire(playing)
        self.refs.mark_permanent(permanent)
        self.refs.acquire(self.cache_dir / "fetching000")

        removed = await self.sweeper.sweep()

        self.assertEqual(removed, 2)
        self.assertTrue(playing.exists())
        self.assertTrue(permanent.exists())
        self.assertTrue(downloading.exists())
        self.assertFalse(stale.exists())
        self.assertFalse(leftover.exists())

    async def test_sweep_of_empty_directory(self) -> None:
        self.assertEqual(await self.sweeper.sweep(), 0)

    async def test_full_wipe_removes_permanent_entries(self) -> None:
        permanent = write_file(self.cache_dir / "permanent00.webm")
        other = write_file(self.cache_dir / "other000000.ogg")
        self.refs.mark_permanent(permanent)

        removed = await self.sweeper.full_wipe()

        self.assertEqual(removed, 2)
        self.assertFalse(permanent.exists())
        self.assertFalse(other.exists())
        self.assertFalse(self.refs.is_permanent(permanent))

    async def test_full_wipe_tolerates_vanished_files(self) -> None:
        gone = write_file(self.cache_dir / "vanished000.webm")
        self.refs.mark_permanent(gone)
        listing = [gone]
        gone.unlink()

        self.sweeper._list_files = lambda: asyncio.sleep(0, result=listing)
        removed = await self.sweeper.full_wipe()

        self.assertEqual(removed, 0)
        self.assertFalse(self.refs.is_permanent(gone))

    async def test_background_loop_sweeps_until_stopped(self) -> None:
        stale = write_file(self.cache_dir / "stale000000.webm")

        await self.sweeper.start()
        try:
            for _ in range(100):
                if not stale.exists():
                    break
                await asyncio.sleep(0.02)
        finally:
            await self.sweeper.stop()

        self.assertFalse(stale.exists())
        self.assertIsNone(self.sweeper._sweep_task)
        self.assertIsNone(self.sweeper._wipe_task)


if __name__ == "__main__":
    unittest.main()
