"""
Guild Player - per-guild queue, playback state machine and play loop
"""
import asyncio
import logging
from collections import deque
from contextlib import suppress
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable

from jukebox.cache.store import CacheEntry, CacheStore
from jukebox.exceptions import (
    FetchError,
    NotPlayingError,
    SinkError,
    TeardownError,
)
from jukebox.playback.sink import PlaybackSink
from jukebox.services.youtube import Track

logger = logging.getLogger(__name__)


class PlayerState(Enum):
    IDLE = "idle"
    JOINING = "joining"
    PLAYING = "playing"
    DRAINING = "draining"


class _Command(Enum):
    ENQUEUE = "enqueue"
    FINISHED = "finished"
    SKIP = "skip"
    IDLE_EXPIRED = "idle_expired"


class GuildPlayer:
    """
    Queue and play loop for one guild.

    All state changes happen on a single worker task that consumes a command
    queue, so enqueue, advance, skip and idle expiry never interleave. ``stop``
    is the exception: it cancels the worker and tears everything down at once
    so it takes effect even while a fetch is in flight.
    """

    def __init__(
        self,
        guild_id: int,
        sink: PlaybackSink,
        cache: CacheStore,
        *,
        idle_timeout: float = 300.0,
        on_expire: Callable[["GuildPlayer"], Awaitable[None]] | None = None,
        notify: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.guild_id = guild_id
        self.sink = sink
        self.cache = cache
        self.idle_timeout = idle_timeout
        self.on_expire = on_expire
        self.notify = notify

        self.songs: deque[Track] = deque()
        self.state = PlayerState.IDLE
        self.current: CacheEntry | None = None
        self.current_track: Track | None = None

        self._commands: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._generation = 0  # bumped for every track handed to the sink
        self._idle_handle: asyncio.TimerHandle | None = None
        self._idle_epoch = 0
        self._prefetched: dict[str, CacheEntry] = {}
        self._prefetch_tasks: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<GuildPlayer guild={self.guild_id} state={self.state.value} queued={len(self.songs)}>"

    @property
    def current_file(self) -> Path | None:
        if self.state is PlayerState.PLAYING and self.current:
            return self.current.path
        return None

    @property
    def idle_timer_armed(self) -> bool:
        return self._idle_handle is not None

    # ==================== COMMANDS ====================

    def start(self) -> None:
        """Start the worker task if it is not running."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    def enqueue(self, track: Track) -> None:
        if self.state is PlayerState.DRAINING:
            raise NotPlayingError("This player is shutting down")
        self._commands.put_nowait((_Command.ENQUEUE, track))

    def skip(self) -> None:
        """Stop the current track; the next one starts on its own."""
        if self.state is not PlayerState.PLAYING:
            raise NotPlayingError("Nothing is playing")
        self._commands.put_nowait((_Command.SKIP, self._generation))

    async def stop(self) -> None:
        """Drain the player: drop the queue, release files, disconnect."""
        if self.state is PlayerState.DRAINING:
            return
        logger.info(f"[guild {self.guild_id}] Stopping player")
        self.state = PlayerState.DRAINING
        self.songs.clear()
        self._cancel_idle_timer()

        worker = self._worker
        if worker and worker is not asyncio.current_task() and not worker.done():
            # In-flight fetches are shielded and finish on their own
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker

        for task in list(self._prefetch_tasks):
            task.cancel()
        for entry in self._prefetched.values():
            self.cache.release(entry)
        self._prefetched.clear()

        entry = self.current
        self.current = None
        self.current_track = None
        try:
            self.sink.stop()
            await self.sink.disconnect()
        except (SinkError, TeardownError) as e:
            logger.warning(f"[guild {self.guild_id}] Teardown error (ignored): {e}")
        finally:
            if entry:
                self.cache.release(entry)

    # ==================== PLAY LOOP ====================

    async def _run(self) -> None:
        while self.state is not PlayerState.DRAINING:
            command, payload = await self._commands.get()
            try:
                if command is _Command.ENQUEUE:
                    await self._on_enqueue(payload)
                elif command is _Command.FINISHED:
                    await self._on_finished(*payload)
                elif command is _Command.SKIP:
                    self._on_skip(payload)
                elif command is _Command.IDLE_EXPIRED:
                    await self._on_idle_expired(payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"[guild {self.guild_id}] Unexpected error handling {command.value}")
                await self._recover()

    async def _recover(self) -> None:
        """Leave a half-finished transition so later commands are not stuck."""
        if self.state is not PlayerState.JOINING:
            return
        self._release_current()
        await self._advance()

    async def _on_enqueue(self, track: Track) -> None:
        self.songs.append(track)
        self._cancel_idle_timer()
        if self.state is PlayerState.IDLE:
            self.state = PlayerState.JOINING
            await self._advance()
        elif self.state is PlayerState.PLAYING and self.songs[0] is track:
            self._start_prefetch()

    async def _on_finished(self, generation: int, error: Exception | None) -> None:
        if generation != self._generation or self.state is not PlayerState.PLAYING:
            return
        track = self.current_track
        if error:
            logger.error(f"[guild {self.guild_id}] Playback error on {track.id}: {error}")
            await self._announce(f"❌ Playback failed: {track.label}")
        else:
            logger.debug(f"[guild {self.guild_id}] Finished {track.id}")
        self._release_current()
        await self._advance()

    def _on_skip(self, generation: int) -> None:
        if generation != self._generation or self.state is not PlayerState.PLAYING:
            return
        logger.info(f"[guild {self.guild_id}] Skipping {self.current_track.id}")
        # The sink reports the stopped track as finished, which advances
        self.sink.stop()

    async def _on_idle_expired(self, epoch: int) -> None:
        if epoch != self._idle_epoch or self._idle_handle is None:
            return
        if self.state is not PlayerState.IDLE or self.songs:
            return
        self._idle_handle = None
        logger.info(f"💤 Inactive for {self.idle_timeout:.0f}s, leaving guild {self.guild_id}")
        if self.on_expire:
            await self.on_expire(self)
        else:
            await self.stop()

    async def _advance(self) -> None:
        """Play the next queued track, or go idle when the queue is empty."""
        while self.songs:
            track = self.songs.popleft()
            self.state = PlayerState.JOINING
            entry = await self._resolve(track)
            if entry is None:
                continue

            try:
                await self._start(track, entry)
            except asyncio.CancelledError:
                self.cache.release(entry)
                raise
            except Exception as e:
                if isinstance(e, SinkError):
                    logger.error(f"[guild {self.guild_id}] Sink failed for {track.id} (phase=start): {e}")
                else:
                    logger.exception(f"[guild {self.guild_id}] Unexpected error starting {track.id}")
                self.cache.release(entry)
                await self._announce(f"❌ Error streaming: {track.source_url}\n{e}")
                continue

            logger.info(f"▶️ [guild {self.guild_id}] Now playing: {track.id} (requested by {track.requested_by})")
            await self._announce(f"▶️ Now playing: {track.label} (requested by {track.requested_by})")
            self._start_prefetch()
            return

        self.state = PlayerState.IDLE
        self._arm_idle_timer()

    async def _resolve(self, track: Track) -> CacheEntry | None:
        prefetched = self._prefetched.pop(track.id, None)
        try:
            return await self.cache.materialize(track)
        except FetchError as e:
            logger.warning(f"[guild {self.guild_id}] Skipping {track.id} (phase=resolve): {e}")
            await self._announce(f"❌ Error streaming: {track.source_url}\n{e}")
            return None
        except Exception as e:
            logger.exception(f"[guild {self.guild_id}] Unexpected error resolving {track.id}")
            await self._announce(f"❌ Error streaming: {track.source_url}\n{e}")
            return None
        finally:
            if prefetched:
                self.cache.release(prefetched)

    async def _start(self, track: Track, entry: CacheEntry) -> None:
        if not self.sink.is_connected:
            await self.sink.connect()
        self._generation += 1
        await self.sink.play(entry.path, partial(self._sink_finished, self._generation))
        self.current = entry
        self.current_track = track
        self.state = PlayerState.PLAYING

    def _sink_finished(self, generation: int, error: Exception | None) -> None:
        self._commands.put_nowait((_Command.FINISHED, (generation, error)))

    def _release_current(self) -> None:
        entry = self.current
        self.current = None
        self.current_track = None
        if entry:
            self.cache.release(entry)

    async def _announce(self, message: str) -> None:
        if not self.notify:
            return
        try:
            await self.notify(message)
        except Exception as e:
            logger.debug(f"[guild {self.guild_id}] Failed to send notice: {e}")

    # ==================== PREFETCH ====================

    def _start_prefetch(self) -> None:
        if not self.songs:
            return
        track = self.songs[0]
        if track.id in self._prefetched or self.cache.is_pending(track.id):
            return
        task = asyncio.create_task(self._prefetch(track))
        self._prefetch_tasks.add(task)
        task.add_done_callback(self._prefetch_tasks.discard)

    async def _prefetch(self, track: Track) -> None:
        if await asyncio.to_thread(self.cache.contains, track.id):
            return
        logger.debug(f"[guild {self.guild_id}] Prefetching {track.id}")
        try:
            entry = await self.cache.materialize(track)
        except FetchError as e:
            # The play loop retries when the track reaches the head
            logger.info(f"[guild {self.guild_id}] Prefetch of {track.id} failed: {e}")
            return
        except Exception:
            logger.exception(f"[guild {self.guild_id}] Unexpected error prefetching {track.id}")
            return
        if self.state is PlayerState.DRAINING or track.id in self._prefetched:
            self.cache.release(entry)
            return
        self._prefetched[track.id] = entry

    # ==================== IDLE TIMER ====================

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(
            self.idle_timeout,
            self._commands.put_nowait,
            (_Command.IDLE_EXPIRED, self._idle_epoch),
        )

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        self._idle_epoch += 1
