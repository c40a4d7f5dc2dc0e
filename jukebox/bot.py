"""
Guild Jukebox - Main Entry Point
"""
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import discord
from discord.ext import commands

logger = logging.getLogger("bot")


def setup_logging(level: str = "INFO", log_path: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    logging.getLogger("discord.voice_state").setLevel(logging.WARNING)
    logging.getLogger("discord.player").setLevel(logging.WARNING)
    logging.getLogger("yt_dlp").setLevel(logging.WARNING)


class JukeboxBot(commands.Bot):
    """Discord music bot playing queued YouTube tracks from a local cache."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.references = None
        self.youtube = None
        self.cache = None
        self.sweeper = None

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from jukebox.cache.references import ReferenceSet
        from jukebox.cache.store import CacheStore
        from jukebox.cache.sweeper import CacheSweeper
        from jukebox.config import config
        from jukebox.services.fetcher import Fetcher
        from jukebox.services.youtube import YouTubeService

        cache_dir = config.CACHE_DIR.resolve()
        self.references = ReferenceSet()
        self.youtube = YouTubeService(
            config.YTDL_COOKIES_PATH,
            config.YTDL_PO_TOKEN,
            download_timeout=config.DOWNLOAD_TIMEOUT,
        )
        self.cache = CacheStore(
            cache_dir,
            self.references,
            Fetcher(self.youtube, cache_dir, self.references),
            min_size=config.MIN_FILE_SIZE,
            permanent=config.PERMANENT_CACHE,
        )
        self.sweeper = CacheSweeper(
            cache_dir,
            self.references,
            sweep_interval=config.SWEEP_INTERVAL,
            wipe_interval=config.FULL_WIPE_INTERVAL,
        )
        await self.cache.scan()
        logger.info(f"Cache initialized at {cache_dir} (permanent={config.PERMANENT_CACHE})")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        if cogs_dir.exists():
            for cog_file in cogs_dir.glob("*.py"):
                if cog_file.name.startswith("_"):
                    continue
                cog_name = f"jukebox.cogs.{cog_file.stem}"
                try:
                    await self.load_extension(cog_name)
                    logger.info(f"Loaded cog: {cog_name}")
                except commands.ExtensionError as e:
                    logger.error(f"Failed to load cog {cog_name}: {e}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(
            type=discord.ActivityType.listening,
            name="/play"
        )
        await self.change_presence(activity=activity)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Unload the music cog first so players release their files and disconnect
        try:
            await self.unload_extension("jukebox.cogs.music")
        except commands.ExtensionError as e:
            logger.debug(f"Music cog was not loaded: {e}")

        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.debug(f"Voice disconnect failed during shutdown: {e}")

        if self.youtube:
            await self.youtube.shutdown()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    from jukebox.config import config

    config.validate()
    setup_logging(config.LOG_LEVEL, config.LOG_PATH)

    bot = JukeboxBot()

    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except discord.DiscordException as e:
            logger.error(f"Bot error: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # standard exit
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
