"""
Exceptions raised by the jukebox core, grouped so callers can tell user errors
from per-track failures.
"""


class JukeboxError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(JukeboxError):
    """Raised when required settings are missing or out of range."""


class InvalidURLError(JukeboxError):
    """Raised when a URL does not resolve to a track id."""


class FetchError(JukeboxError):
    """Raised when a track could not be downloaded."""


class NetworkError(FetchError):
    """Raised for timeouts and transport failures while downloading."""


class NotFoundError(FetchError):
    """Raised when the source reports the track as missing or private."""


class FormatError(FetchError):
    """Raised when no usable audio format was produced by the downloader."""


class CorruptionError(FetchError):
    """Raised when a cached or downloaded file fails validation."""


class NotPlayingError(JukeboxError):
    """Raised when a command needs an active track and nothing is playing."""


class EmptyQueueError(JukeboxError):
    """Raised when there is nothing playing and nothing queued."""


class SinkError(JukeboxError):
    """Raised when the voice sink cannot connect or start playback."""


class TeardownError(JukeboxError):
    """Raised when disconnecting a guild fails. Never blocks removal."""
