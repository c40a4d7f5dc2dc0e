"""
Fetcher - downloads tracks into the cache directory
"""
import asyncio
import logging
from functools import partial
from pathlib import Path

from jukebox.cache.references import ReferenceSet
from jukebox.cache.store import PARTIAL_SUFFIXES
from jukebox.exceptions import FormatError
from jukebox.services.youtube import Track, YouTubeService

logger = logging.getLogger(__name__)


class Fetcher:
    """
    Wraps the yt-dlp downloader for on-demand and prefetch downloads.

    Output is written to ``<cache_dir>/<track_id>.<ext>``. The stem is held in
    the reference set for the whole download so the sweeper leaves the
    partial file alone; a crash leaves an unreferenced partial for the next
    sweep.
    """

    def __init__(self, youtube: YouTubeService, cache_dir: Path, references: ReferenceSet):
        self.youtube = youtube
        self.cache_dir = cache_dir
        self.references = references
        self._downloads: dict[str, asyncio.Task] = {}

    def staging_path(self, track_id: str) -> Path:
        return self.cache_dir / track_id

    def is_fetching(self, track_id: str) -> bool:
        task = self._downloads.get(track_id)
        return task is not None and not task.done()

    async def fetch(self, track: Track) -> Path:
        """Download ``track`` and return the written file. Joins a running download."""
        task = self._downloads.get(track.id)
        if task is None or task.done():
            task = asyncio.create_task(self._download(track))
            task.add_done_callback(partial(self._forget, track.id))
            self._downloads[track.id] = task
        return await asyncio.shield(task)

    def _forget(self, track_id: str, task: asyncio.Task) -> None:
        if self._downloads.get(track_id) is task:
            del self._downloads[track_id]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Download of {track_id} failed: {task.exception()}")

    async def _download(self, track: Track) -> Path:
        stem = self.staging_path(track.id)
        self.references.acquire(stem)
        try:
            logger.info(f"Downloading {track.id} (requested by {track.requested_by})")
            await self.youtube.download(track.id, f"{stem}.%(ext)s")
            path = await asyncio.to_thread(self._find_output, track.id)
            if path is None:
                raise FormatError(f"Downloader did not create a file for {track.id}")
            logger.info(f"Downloaded {track.id} to {path.name}")
            return path
        finally:
            self.references.release(stem)

    def _find_output(self, track_id: str) -> Path | None:
        """Newest complete file written for ``track_id``."""
        outputs = [
            p for p in self.cache_dir.glob(f"{track_id}.*")
            if p.is_file() and p.suffix not in PARTIAL_SUFFIXES
        ]
        if not outputs:
            return None
        return max(outputs, key=lambda p: p.stat().st_mtime)
