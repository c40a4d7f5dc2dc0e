"""
Music Cog - Playback commands and voice output
"""
import asyncio
import logging
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands

from jukebox.config import config
from jukebox.exceptions import (
    EmptyQueueError,
    InvalidURLError,
    NotPlayingError,
    SinkError,
    TeardownError,
)
from jukebox.playback.manager import PlayerManager
from jukebox.playback.sink import FinishedCallback

logger = logging.getLogger(__name__)


class VoiceSink:
    """Plays cached files into a guild voice channel."""

    FFMPEG_OPTIONS = {
        "before_options": "-nostdin",
        "options": "-vn",
    }

    def __init__(
        self,
        guild: discord.Guild,
        channel: discord.VoiceChannel,
        owners: dict[int, "VoiceSink"] | None = None,
    ):
        self.guild = guild
        self.channel = channel
        self.voice_client: discord.VoiceClient | None = None
        # guild id -> sink currently driving the guild's voice client
        self.owners = owners if owners is not None else {}

    @property
    def is_connected(self) -> bool:
        return self.voice_client is not None and self.voice_client.is_connected()

    @property
    def owns_voice(self) -> bool:
        return self.owners.get(self.guild.id) is self

    async def connect(self) -> None:
        existing = self.guild.voice_client
        if existing and existing.is_connected():
            # Taken over from a player that is still shutting down
            self.voice_client = existing
            self.owners[self.guild.id] = self
            return
        try:
            self.voice_client = await self.channel.connect(self_deaf=True, timeout=20.0)
            logger.info(f"Connected to {self.channel.name} in {self.guild.name}")
        except (discord.ClientException, asyncio.TimeoutError) as e:
            raise SinkError(f"Failed to connect: {e}") from e
        self.owners[self.guild.id] = self

    async def play(self, path: Path, on_finished: FinishedCallback) -> None:
        loop = asyncio.get_running_loop()
        try:
            # Opus/webm files are passed through without re-encoding
            source = await asyncio.wait_for(
                discord.FFmpegOpusAudio.from_probe(str(path), **self.FFMPEG_OPTIONS),
                timeout=10.0
            )
        except asyncio.TimeoutError as e:
            raise SinkError(f"Audio probe timed out for {path.name}") from e
        except (discord.DiscordException, OSError) as e:
            raise SinkError(f"Audio probe failed for {path.name}: {e}") from e

        def after_play(error):
            loop.call_soon_threadsafe(on_finished, error)

        try:
            self.voice_client.play(source, after=after_play)
        except (discord.ClientException, AttributeError) as e:
            source.cleanup()
            raise SinkError(f"Voice client refused playback: {e}") from e

    def stop(self) -> None:
        if not self.voice_client or not self.owns_voice:
            return
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()

    async def disconnect(self) -> None:
        if not self.voice_client:
            return
        voice_client, self.voice_client = self.voice_client, None
        if not self.owns_voice:
            logger.debug(f"Voice client in {self.guild.name} belongs to a newer player, leaving it connected")
            return
        del self.owners[self.guild.id]
        try:
            await voice_client.disconnect(force=True)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            raise TeardownError(f"Failed to disconnect from {self.guild.name}: {e}") from e


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.text_channels: dict[int, int] = {}  # guild id -> channel for notices
        self.voice_owners: dict[int, VoiceSink] = {}
        self.manager = PlayerManager(
            bot.cache,
            self._make_sink,
            idle_timeout=config.IDLE_TIMEOUT,
            youtube=bot.youtube,
            notify=self._send_notice,
        )

    async def cog_load(self):
        """Called when the cog is loaded."""
        await self.bot.sweeper.start()
        logger.info("Music cog loaded")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        await self.manager.shutdown()
        await self.bot.sweeper.stop()
        logger.info("Music cog unloaded")

    def _make_sink(self, guild_id: int, voice_channel: discord.VoiceChannel) -> VoiceSink:
        return VoiceSink(voice_channel.guild, voice_channel, self.voice_owners)

    async def _send_notice(self, guild_id: int, message: str) -> None:
        channel_id = self.text_channels.get(guild_id)
        if not channel_id:
            return
        channel = self.bot.get_channel(channel_id)
        if channel:
            await channel.send(message)

    # ==================== COMMANDS ====================

    @app_commands.command(name="play", description="Queue a YouTube URL")
    @app_commands.describe(url="YouTube video URL")
    async def play(self, interaction: discord.Interaction, url: str):
        """Add a track to the queue and start playing if idle."""
        if not interaction.user.voice or not interaction.user.voice.channel:
            await interaction.response.send_message("🔊 Join a voice channel first.", ephemeral=True)
            return

        if not interaction.response.is_done():
            await interaction.response.defer()

        self.text_channels[interaction.guild_id] = interaction.channel_id
        try:
            track = await self.manager.play(
                interaction.guild_id,
                url,
                requested_by=interaction.user.display_name,
                voice_target=interaction.user.voice.channel,
            )
        except InvalidURLError:
            await interaction.followup.send("❌ Please provide a valid YouTube URL.", ephemeral=True)
            return
        except NotPlayingError as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return

        await interaction.followup.send(f"🎶 Added to queue: {track.label}")

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        """Skip the current song."""
        try:
            self.manager.skip(interaction.guild_id)
        except NotPlayingError:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.send_message("⏭️ Skipped!")

    @app_commands.command(name="stop", description="Stop playback and leave the channel")
    async def stop(self, interaction: discord.Interaction):
        """Clear the queue and disconnect."""
        await interaction.response.defer()
        await self.manager.stop(interaction.guild_id)
        await interaction.followup.send("🛑 Stopped playback and left the channel.")

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        """Show the queue."""
        try:
            current, upcoming = self.manager.snapshot(interaction.guild_id)
        except EmptyQueueError:
            await interaction.response.send_message("📭 Queue is empty", ephemeral=True)
            return

        embed = discord.Embed(title="🎵 Queue", color=discord.Color.blue())
        if current:
            embed.add_field(
                name="Now Playing",
                value=f"**{current.label}**\nrequested by {current.requested_by}",
                inline=False
            )
        if upcoming:
            lines = [f"{i}. **{t.label}** ({t.requested_by})" for i, t in enumerate(upcoming[:10], 1)]
            if len(upcoming) > 10:
                lines.append(f"...and {len(upcoming) - 10} more")
            embed.add_field(name="Up Next", value="\n".join(lines), inline=False)
        else:
            embed.add_field(name="Up Next", value="Queue is empty", inline=False)

        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="nowplaying", description="Show the current song")
    async def nowplaying(self, interaction: discord.Interaction):
        """Show the current song."""
        player = self.manager.get(interaction.guild_id)
        if not player or not player.current_track:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return

        track = player.current_track
        embed = discord.Embed(
            title="🎵 Now Playing",
            description=f"**{track.label}**\n{track.source_url}",
            color=discord.Color.green()
        )
        embed.set_footer(text=f"Requested by {track.requested_by}")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Leave when kicked from voice or left alone in the channel."""
        guild_id = member.guild.id
        if not self.manager.get(guild_id):
            return

        # The bot itself was disconnected (kicked or moved out by a user)
        if member.id == self.bot.user.id:
            if before.channel and not after.channel:
                await self.manager.teardown(guild_id, "bot was disconnected from voice")
            return

        channel = before.channel
        if not channel or channel == after.channel:
            return
        if not any(m.id == self.bot.user.id for m in channel.members):
            return
        if not [m for m in channel.members if not m.bot]:
            await self.manager.teardown(guild_id, "everyone left the voice channel")

    @commands.Cog.listener()
    async def on_guild_remove(self, guild: discord.Guild):
        await self.manager.teardown(guild.id, "removed from guild")
        self.text_channels.pop(guild.id, None)


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
