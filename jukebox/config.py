"""
Bot configuration - read from the environment (and an optional .env file)
"""
import os
from pathlib import Path

from dotenv import load_dotenv

from jukebox.exceptions import ConfigurationError

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


class Config:
    """Runtime settings."""

    def __init__(self):
        self.DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")

        self.DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
        self.CACHE_DIR = Path(os.getenv("CACHE_DIR", str(self.DATA_DIR / "cache")))
        self.LOG_PATH = Path(os.getenv("LOG_PATH", str(self.DATA_DIR / "bot.log")))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        # Seconds
        self.IDLE_TIMEOUT = _env_float("IDLE_TIMEOUT", 5 * 60)
        self.SWEEP_INTERVAL = _env_float("SWEEP_INTERVAL", 10 * 60)
        self.FULL_WIPE_INTERVAL = _env_float("FULL_WIPE_INTERVAL", 7 * 24 * 3600)
        self.DOWNLOAD_TIMEOUT = _env_float("DOWNLOAD_TIMEOUT", 300)

        # Keep materialized files for reuse; false deletes them after playback
        self.PERMANENT_CACHE = _env_bool("PERMANENT_CACHE", True)
        self.MIN_FILE_SIZE = int(_env_float("MIN_FILE_SIZE", 8 * 1024))

        self.YTDL_COOKIES_PATH = os.getenv("YTDL_COOKIES_PATH") or None
        self.YTDL_PO_TOKEN = os.getenv("YTDL_PO_TOKEN") or None

    def validate(self) -> None:
        """Raise ConfigurationError if the bot cannot start with these settings."""
        if not self.DISCORD_TOKEN.strip():
            raise ConfigurationError("DISCORD_TOKEN is not set.")
        for name in ("IDLE_TIMEOUT", "SWEEP_INTERVAL", "FULL_WIPE_INTERVAL", "DOWNLOAD_TIMEOUT"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be greater than 0.")
        if self.MIN_FILE_SIZE < 0:
            raise ConfigurationError("MIN_FILE_SIZE cannot be negative.")


config = Config()
