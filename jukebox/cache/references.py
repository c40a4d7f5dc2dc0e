"""
Reference Set - paths that cleanup must not delete
"""
import logging
from collections import Counter
from pathlib import Path

logger = logging.getLogger(__name__)


class ReferenceSet:
    """
    Process-wide set of protected cache paths.

    A path is protected while it holds at least one reference (open for
    playback, mid-download, or held by a prefetch) or while it is marked as a
    permanent cache entry. A registered path also covers the sidecar files the
    downloader writes next to it, e.g. ``abc.webm.part`` for ``abc.webm`` and
    ``abc.webm`` for the stem ``abc``.

    Only touched from the event loop thread, so every method is atomic with
    respect to other coroutines.
    """

    def __init__(self):
        self._counts: Counter[Path] = Counter()
        self._permanent: set[Path] = set()

    def acquire(self, path: Path) -> None:
        self._counts[path] += 1

    def release(self, path: Path) -> None:
        count = self._counts.get(path, 0)
        if count <= 0:
            logger.warning(f"Released unreferenced path: {path.name}")
            return
        if count == 1:
            del self._counts[path]
        else:
            self._counts[path] = count - 1

    def count(self, path: Path) -> int:
        """Number of live references on exactly this path."""
        return self._counts.get(path, 0)

    def mark_permanent(self, path: Path) -> None:
        self._permanent.add(path)

    def is_permanent(self, path: Path) -> bool:
        return path in self._permanent

    def forget(self, path: Path) -> None:
        """Drop the permanent mark after the file was deleted."""
        self._permanent.discard(path)

    def is_protected(self, path: Path) -> bool:
        if self._counts.get(path) or path in self._permanent:
            return True
        for held in (*self._counts, *self._permanent):
            if held.parent == path.parent and path.name.startswith(held.name + "."):
                return True
        return False

    def __contains__(self, path: Path) -> bool:
        return self.is_protected(path)

    def __len__(self) -> int:
        return len(set(self._counts) | self._permanent)

    def snapshot(self) -> set[Path]:
        """Copy of every registered path, referenced or permanent."""
        return set(self._counts) | self._permanent
