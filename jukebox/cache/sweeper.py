"""
Cleanup Sweeper - periodic garbage collection of the cache directory
"""
import asyncio
import logging
from contextlib import suppress
from pathlib import Path

from jukebox.cache.references import ReferenceSet

logger = logging.getLogger(__name__)


class CacheSweeper:
    """
    Deletes cache files on two cadences.

    The frequent sweep removes every file the reference set does not protect.
    The full wipe removes everything, permanent entries included, to bound
    disk usage over time.
    """

    def __init__(
        self,
        cache_dir: Path,
        references: ReferenceSet,
        sweep_interval: float = 600,
        wipe_interval: float = 7 * 24 * 3600,
    ):
        self.cache_dir = cache_dir
        self.references = references
        self.sweep_interval = sweep_interval
        self.wipe_interval = wipe_interval
        self._sweep_task: asyncio.Task | None = None
        self._wipe_task: asyncio.Task | None = None

    async def start(self):
        """Starts both background loops."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._loop(self.sweep, self.sweep_interval))
        if self._wipe_task is None or self._wipe_task.done():
            self._wipe_task = asyncio.create_task(self._loop(self.full_wipe, self.wipe_interval))
        logger.debug("Started cache sweeper tasks.")

    async def stop(self):
        """Stops both background loops."""
        for task in (self._sweep_task, self._wipe_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._sweep_task = None
        self._wipe_task = None
        logger.debug("Stopped cache sweeper tasks.")

    async def _loop(self, job, interval: float):
        while True:
            try:
                await asyncio.sleep(interval)
                await job()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Error in cache {job.__name__} loop: {e}")

    async def _list_files(self) -> list[Path]:
        if not self.cache_dir.exists():
            return []
        return await asyncio.to_thread(
            lambda: [p for p in self.cache_dir.iterdir() if p.is_file()]
        )

    async def sweep(self) -> int:
        """Delete unprotected files. Returns how many were removed."""
        removed = 0
        for path in await self._list_files():
            # Check and unlink without yielding to the loop in between
            if self.references.is_protected(path):
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to delete unused cache file {path.name}: {e}")
                continue
            removed += 1
            logger.debug(f"Deleted unused cache file: {path.name}")

        if removed:
            logger.info(f"Cache sweep: removed {removed} unused file(s).")
        return removed

    async def full_wipe(self) -> int:
        """Delete every cached file, permanent entries included."""
        removed = 0
        for path in await self._list_files():
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to delete cache file {path.name}: {e}")
                continue
            else:
                removed += 1
            self.references.forget(path)

        logger.info(f"Cache full wipe: removed {removed} file(s).")
        return removed
