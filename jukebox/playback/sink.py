"""
Playback sink contract used by the guild players
"""
from pathlib import Path
from typing import Callable, Protocol

FinishedCallback = Callable[[Exception | None], None]


class PlaybackSink(Protocol):
    """
    Voice output for one guild.

    ``play`` returns once playback has started. ``on_finished`` must be
    invoked on the event loop exactly once per ``play``: with None when the
    file ended or ``stop`` was called, with the error otherwise. Failures to
    connect or start raise ``SinkError``; ``disconnect`` raises
    ``TeardownError``.
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def play(self, path: Path, on_finished: FinishedCallback) -> None: ...

    def stop(self) -> None: ...

    async def disconnect(self) -> None: ...
