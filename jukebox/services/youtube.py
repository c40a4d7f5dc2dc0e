"""
YouTube wrapper - URL resolution, track info and yt-dlp downloads
"""
import asyncio
import logging
import random
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial, wraps

import yt_dlp
from ytmusicapi import YTMusic

from jukebox.exceptions import (
    FetchError,
    FormatError,
    InvalidURLError,
    NetworkError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

YOUTUBE_DOMAINS = ("youtube.com", "youtu.be", "music.youtube.com")
VIDEO_ID_PATTERN = re.compile(r"(?:v=|/|embed/|shorts/|youtu\.be/)([0-9A-Za-z_-]{11})(?![0-9A-Za-z_-])")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/58.0.3029.110 Safari/537.3"
)

NOT_FOUND_MARKERS = (
    "video unavailable",
    "private video",
    "has been removed",
    "does not exist",
    "http error 404",
    "not available",
)


def retry_with_backoff(retries=3, backoff_in_seconds=1, retry_on=(Exception,)):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    else:
                        sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                        logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                        await asyncio.sleep(sleep)
                        x += 1
        return wrapper
    return decorator


@dataclass(frozen=True)
class Track:
    """A queued track. The id is the cache key."""
    id: str
    source_url: str
    requested_by: str
    title: str | None = None

    @property
    def label(self) -> str:
        return self.title or self.source_url


def extract_video_id(url: str) -> str:
    """Resolve a YouTube URL to its 11 character video id."""
    url = (url or "").strip()
    # Check domain first to avoid false positives (e.g. Spotify)
    if not any(domain in url for domain in YOUTUBE_DOMAINS):
        raise InvalidURLError(f"Not a YouTube URL: {url!r}")

    # Matches watch?v=ID, /v/ID, /embed/ID, /shorts/ID, youtu.be/ID
    match = VIDEO_ID_PATTERN.search(url)
    if not match:
        raise InvalidURLError(f"No video id in URL: {url!r}")
    return match.group(1)


def _abort_hook(abort: threading.Event, status: dict) -> None:
    if abort.is_set():
        raise yt_dlp.utils.DownloadCancelled("Download aborted")


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def classify_download_error(video_id: str, error: Exception) -> FetchError:
    """Map a yt-dlp failure onto the fetch error taxonomy."""
    message = str(error)
    lowered = message.lower()
    if "requested format" in lowered or "no video formats" in lowered:
        return FormatError(f"No usable audio format for {video_id}: {message}")
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return NotFoundError(f"Track {video_id} is unavailable: {message}")
    return NetworkError(f"Download of {video_id} failed: {message}")


class YouTubeService:
    """YouTube Music API and yt-dlp wrapper."""

    def __init__(
        self,
        cookies_path: str | None = None,
        po_token: str | None = None,
        download_timeout: float = 300.0,
    ):
        self.yt = YTMusic()
        self.cookies_path = cookies_path
        self.po_token = po_token
        self.download_timeout = download_timeout

        # Dedicated executor for YouTube operations to prevent blocking main thread pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")

        self._download_opts = {
            "format": "251/bestaudio",  # 251 is opus/webm
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "prefer_free_formats": True,
            "http_headers": {
                "Referer": "https://www.youtube.com/",
                "User-Agent": USER_AGENT,
            },
            "ignoreerrors": False,
            "logtostderr": False,
            "noplaylist": True,
            "overwrites": True,
            "continuedl": False,
        }
        if cookies_path:
            self._download_opts["cookiefile"] = cookies_path
        if po_token:
            self._download_opts["extractor_args"] = {"youtube": {"po_token": [po_token]}}

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    async def get_title(self, video_id: str) -> str | None:
        """Best-effort "Title - Artist" label for a video; None on any failure."""
        loop = asyncio.get_event_loop()
        try:
            r = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    partial(self.yt.get_song, videoId=video_id)
                ),
                timeout=10.0
            )
        except asyncio.TimeoutError:
            logger.warning(f"YouTube track info timed out for: {video_id}")
            return None
        except Exception as e:
            logger.warning(f"Error getting track info for {video_id}: {e}")
            return None

        video_details = r.get("videoDetails", {}) if r else {}
        title = video_details.get("title")
        if not title:
            return None
        author = video_details.get("author")
        return f"{title} - {author}" if author else title

    def download_options(self, outtmpl: str) -> dict:
        return {**self._download_opts, "outtmpl": outtmpl}

    @retry_with_backoff(retries=2, retry_on=(NetworkError,))
    async def download(self, video_id: str, outtmpl: str) -> None:
        """Download the audio of ``video_id`` to the yt-dlp output template."""
        loop = asyncio.get_event_loop()
        abort = threading.Event()
        opts = self.download_options(outtmpl)
        opts["progress_hooks"] = [partial(_abort_hook, abort)]

        def run():
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.download([watch_url(video_id)])

        future = loop.run_in_executor(self.executor, run)
        try:
            retcode = await asyncio.wait_for(asyncio.shield(future), timeout=self.download_timeout)
        except asyncio.TimeoutError as e:
            # The worker keeps writing to outtmpl until yt-dlp sees the abort flag
            abort.set()
            await self._drain(video_id, future)
            raise NetworkError(f"Download of {video_id} timed out after {self.download_timeout:.0f}s") from e
        except asyncio.CancelledError:
            abort.set()
            raise
        except yt_dlp.utils.DownloadError as e:
            raise classify_download_error(video_id, e) from e

        if retcode:
            raise FormatError(f"yt-dlp exited with code {retcode} for {video_id}")

    async def _drain(self, video_id: str, future: asyncio.Future) -> None:
        """Wait for an aborted download thread to return."""
        try:
            await future
        except Exception as e:
            logger.debug(f"Aborted download of {video_id} ended with: {e}")
