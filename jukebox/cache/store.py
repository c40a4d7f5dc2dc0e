"""
Cache Store - content-addressed audio files, one per track id
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Protocol

from jukebox.cache.references import ReferenceSet
from jukebox.exceptions import CorruptionError
from jukebox.services.youtube import Track

logger = logging.getLogger(__name__)

# (offset, magic, extension)
CONTAINER_SIGNATURES = (
    (0, b"\x1aE\xdf\xa3", "webm"),
    (0, b"OggS", "ogg"),
    (4, b"ftyp", "m4a"),
    (0, b"ID3", "mp3"),
    (0, b"\xff\xfb", "mp3"),
    (0, b"\xff\xf3", "mp3"),
    (0, b"\xff\xf2", "mp3"),
)

# Files the downloader leaves behind while (or after failing) writing
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


def sniff_container(header: bytes) -> str | None:
    """Return the container extension matching a file header, if any."""
    for offset, magic, ext in CONTAINER_SIGNATURES:
        if header[offset:offset + len(magic)] == magic:
            return ext
    return None


class TrackFetcher(Protocol):
    async def fetch(self, track: Track) -> Path: ...


@dataclass(frozen=True)
class CacheEntry:
    """A validated file for one track."""
    track_id: str
    path: Path
    size_bytes: int
    validated: bool = True
    permanent: bool = True


@dataclass
class _Flight:
    """One in-progress materialize shared by every caller for a track id."""
    task: asyncio.Task | None = None
    waiters: int = 0


class CacheStore:
    """
    Maps track ids to validated files in ``cache_dir``.

    ``materialize`` hands out entries as handles: each returned entry carries
    one reference on its path that the caller gives back with ``release``.
    """

    def __init__(
        self,
        cache_dir: Path,
        references: ReferenceSet,
        fetcher: TrackFetcher,
        *,
        min_size: int = 8 * 1024,
        permanent: bool = True,
    ):
        self.cache_dir = cache_dir
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.references = references
        self.fetcher = fetcher
        self.min_size = min_size
        self.permanent = permanent
        self._flights: dict[str, _Flight] = {}

    def stem(self, track_id: str) -> Path:
        """Path every file of ``track_id`` is named after."""
        return self.cache_dir / track_id

    def candidates(self, track_id: str) -> list[Path]:
        """Complete (non-partial) files on disk for a track id."""
        return sorted(
            p for p in self.cache_dir.glob(f"{track_id}.*")
            if p.is_file() and p.suffix not in PARTIAL_SUFFIXES
        )

    def contains(self, track_id: str) -> bool:
        return bool(self.candidates(track_id))

    def is_pending(self, track_id: str) -> bool:
        flight = self._flights.get(track_id)
        return flight is not None and not flight.task.done()

    def validate(self, track_id: str, path: Path) -> CacheEntry:
        """Check size and container header. Blocking; run in a thread."""
        try:
            size = path.stat().st_size
            with open(path, "rb") as f:
                header = f.read(16)
        except FileNotFoundError as e:
            raise CorruptionError(f"{path.name} disappeared before validation") from e
        except OSError as e:
            raise CorruptionError(f"{path.name} could not be read: {e}") from e

        if size < self.min_size:
            raise CorruptionError(f"{path.name} is too small ({size} bytes)")
        if sniff_container(header) is None:
            raise CorruptionError(f"{path.name} has an unrecognised container header")

        return CacheEntry(
            track_id=track_id,
            path=path,
            size_bytes=size,
            validated=True,
            permanent=self.permanent,
        )

    async def lookup(self, track_id: str) -> CacheEntry | None:
        """Return a validated entry for ``track_id`` or None on a miss."""
        entry, _ = await self._lookup(track_id)
        return entry

    async def _lookup(self, track_id: str) -> tuple[CacheEntry | None, bool]:
        """Like ``lookup`` but also reports whether a corrupt file was purged."""
        corrupted = False
        for path in await asyncio.to_thread(self.candidates, track_id):
            try:
                entry = await asyncio.to_thread(self.validate, track_id, path)
            except CorruptionError as e:
                logger.warning(f"Cache hit for {track_id} is corrupt, purging: {e}")
                self._purge(path)
                corrupted = True
                continue
            return entry, corrupted
        return None, corrupted

    async def materialize(self, track: Track) -> CacheEntry:
        """
        Resolve a track to a validated local file, fetching it on a miss.

        Concurrent calls for one track id share a single lookup/fetch and all
        see the same entry or the same error. The caller owns one reference on
        the returned entry.
        """
        flight = self._flights.get(track.id)
        if flight is None or flight.task.done():
            flight = _Flight()
            flight.task = asyncio.create_task(self._materialize(track, flight))
            flight.task.add_done_callback(partial(self._land, track.id, flight))
            self._flights[track.id] = flight
        flight.waiters += 1

        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            task = flight.task
            if task.done() and not task.cancelled() and task.exception() is None:
                # Our reference was already taken when the flight landed
                self.release(task.result())
            else:
                flight.waiters -= 1
            raise

    async def _materialize(self, track: Track, flight: _Flight) -> CacheEntry:
        stem = self.stem(track.id)
        # Provisional protection for anything written under this id
        self.references.acquire(stem)
        try:
            entry, corrupted = await self._lookup(track.id)
            if entry is None:
                logger.info(f"Cache miss for {track.id}, fetching")
                entry = await self._fetch(track, attempts=1 if corrupted else 2)
            else:
                logger.debug(f"Cache hit for {track.id}: {entry.path.name}")

            if entry.permanent:
                self.references.mark_permanent(entry.path)
            for _ in range(flight.waiters):
                self.references.acquire(entry.path)
            return entry
        finally:
            self.references.release(stem)

    async def _fetch(self, track: Track, attempts: int) -> CacheEntry:
        error: CorruptionError | None = None
        for attempt in range(1, attempts + 1):
            path = await self.fetcher.fetch(track)
            try:
                entry = await asyncio.to_thread(self.validate, track.id, path)
            except CorruptionError as e:
                logger.warning(
                    f"Downloaded file for {track.id} failed validation "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                self._purge(path)
                error = e
                continue
            self._drop_duplicates(entry)
            return entry
        raise error

    def _land(self, track_id: str, flight: _Flight, task: asyncio.Task) -> None:
        if self._flights.get(track_id) is flight:
            del self._flights[track_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Materialize of {track_id} failed: {task.exception()}")

    def _purge(self, path: Path) -> None:
        """Delete a bad file unless someone is still reading it."""
        if self.references.count(path):
            logger.warning(f"Not purging {path.name}: still referenced")
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete {path.name}: {e}")
            return
        self.references.forget(path)

    def _drop_duplicates(self, entry: CacheEntry) -> None:
        """Keep one file per track id regardless of container."""
        for path in self.candidates(entry.track_id):
            if path != entry.path:
                logger.info(f"Removing duplicate cache file {path.name}")
                self._purge(path)

    def release(self, entry: CacheEntry) -> None:
        """Give back a handle from ``materialize``. Scratch files go when unused."""
        path = entry.path
        if (
            not entry.permanent
            and not self.references.is_permanent(path)
            and self.references.count(path) <= 1
        ):
            try:
                path.unlink(missing_ok=True)
                logger.debug(f"Deleted scratch file {path.name}")
            except OSError as e:
                logger.error(f"Failed to delete scratch file {path.name}: {e}")
        self.references.release(path)

    async def scan(self) -> int:
        """
        Re-register files left from a previous run as permanent entries.

        Corrupt files are purged, partial downloads are left for the sweeper.
        Returns the number of entries recovered.
        """
        if not self.permanent:
            return 0

        paths = await asyncio.to_thread(
            lambda: sorted(
                p for p in self.cache_dir.iterdir()
                if p.is_file() and p.suffix not in PARTIAL_SUFFIXES
            )
        )
        recovered: set[str] = set()
        for path in paths:
            track_id = path.name.split(".", 1)[0]
            if track_id in recovered:
                self._purge(path)
                continue
            try:
                entry = await asyncio.to_thread(self.validate, track_id, path)
            except CorruptionError as e:
                logger.warning(f"Purging corrupt cache file: {e}")
                self._purge(path)
                continue
            self.references.mark_permanent(entry.path)
            recovered.add(track_id)

        logger.info(f"Recovered {len(recovered)} cached track(s) from {self.cache_dir}")
        return len(recovered)
