"""
Player Manager - registry of guild players
"""
import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable

from jukebox.cache.store import CacheStore
from jukebox.exceptions import EmptyQueueError, NotPlayingError
from jukebox.playback.player import GuildPlayer, PlayerState
from jukebox.playback.sink import PlaybackSink
from jukebox.services.youtube import Track, YouTubeService, extract_video_id

logger = logging.getLogger(__name__)

SinkFactory = Callable[[int, Any], PlaybackSink]
Notifier = Callable[[int, str], Awaitable[None]]


class PlayerManager:
    """Owns one GuildPlayer per guild and routes commands to it."""

    def __init__(
        self,
        cache: CacheStore,
        sink_factory: SinkFactory,
        *,
        idle_timeout: float = 300.0,
        youtube: YouTubeService | None = None,
        notify: Notifier | None = None,
    ):
        self.cache = cache
        self.sink_factory = sink_factory
        self.idle_timeout = idle_timeout
        self.youtube = youtube
        self.notify = notify
        self.players: dict[int, GuildPlayer] = {}
        self._arrivals: dict[int, asyncio.Future] = {}  # latest /play per guild still being queued

    def get(self, guild_id: int) -> GuildPlayer | None:
        return self.players.get(guild_id)

    async def play(self, guild_id: int, url: str, requested_by: str, voice_target: Any) -> Track:
        """
        Queue ``url`` for a guild, creating its player on first use.

        Raises InvalidURLError before anything is queued.
        """
        video_id = extract_video_id(url)

        # Title lookups run concurrently; tracks are queued in arrival order
        previous = self._arrivals.get(guild_id)
        arrived = asyncio.get_running_loop().create_future()
        self._arrivals[guild_id] = arrived
        try:
            title = await self.youtube.get_title(video_id) if self.youtube else None
            if previous is not None:
                await asyncio.shield(previous)
            return self._enqueue(guild_id, voice_target, Track(
                id=video_id, source_url=url, requested_by=requested_by, title=title,
            ))
        finally:
            arrived.set_result(None)
            if self._arrivals.get(guild_id) is arrived:
                del self._arrivals[guild_id]

    def _enqueue(self, guild_id: int, voice_target: Any, track: Track) -> Track:
        player = self.players.get(guild_id)
        if player is None or player.state is PlayerState.DRAINING:
            player = GuildPlayer(
                guild_id,
                self.sink_factory(guild_id, voice_target),
                self.cache,
                idle_timeout=self.idle_timeout,
                on_expire=self._expire,
                notify=partial(self.notify, guild_id) if self.notify else None,
            )
            self.players[guild_id] = player
            player.start()
            logger.info(f"Created player for guild {guild_id}")

        player.enqueue(track)
        logger.info(f"[guild {guild_id}] Queued {track.id} for {track.requested_by}")
        return track

    def skip(self, guild_id: int) -> None:
        player = self.players.get(guild_id)
        if player is None:
            raise NotPlayingError("Nothing is playing")
        player.skip()

    async def stop(self, guild_id: int) -> bool:
        """Stop and remove a guild's player. Returns False if there was none."""
        player = self.players.pop(guild_id, None)
        if player is None:
            return False
        await player.stop()
        logger.info(f"Removed player for guild {guild_id}")
        return True

    async def teardown(self, guild_id: int, reason: str) -> None:
        """Stop a guild on presence changes (left alone, kicked, removed)."""
        if guild_id in self.players:
            logger.info(f"[guild {guild_id}] Teardown: {reason}")
            await self.stop(guild_id)

    def snapshot(self, guild_id: int) -> tuple[Track | None, list[Track]]:
        """Now playing and upcoming tracks; EmptyQueueError if there are none."""
        player = self.players.get(guild_id)
        if player is None or (player.current_track is None and not player.songs):
            raise EmptyQueueError("Queue is empty")
        return player.current_track, list(player.songs)

    async def shutdown(self) -> None:
        for guild_id in list(self.players):
            await self.stop(guild_id)

    async def _expire(self, player: GuildPlayer) -> None:
        if self.players.get(player.guild_id) is player:
            del self.players[player.guild_id]
        await player.stop()
