"""Media element abstraction for the playback controller.

A media element is whatever actually plays the video: a browser bridge, an
HLS player process, or the headless `SimulatedMedia` below. The controller only
relies on the small `MediaElement` protocol and on the `MediaEvent` stream.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from aiowebinar.models.types import StreamErrorType

logger = logging.getLogger(__name__)

TIME_UPDATE_INTERVAL = 0.25


class MediaEvent:
    """Base class for events emitted by a media element."""


@dataclass(frozen=True)
class MediaLoaded(MediaEvent):
    """Media data is available (initial load or reload after recovery)."""

    duration: float


@dataclass(frozen=True)
class MediaTimeUpdate(MediaEvent):
    """The playback position moved."""

    current_time: float


@dataclass(frozen=True)
class MediaSeeking(MediaEvent):
    """A seek to `target` started."""

    target: float


@dataclass(frozen=True)
class MediaPlay(MediaEvent):
    """Playback started or resumed."""


@dataclass(frozen=True)
class MediaPause(MediaEvent):
    """Playback paused."""


@dataclass(frozen=True)
class MediaEnded(MediaEvent):
    """Playback reached the end of the media."""


@dataclass(frozen=True)
class MediaError(MediaEvent):
    """The media pipeline reported an error."""

    error_type: StreamErrorType
    fatal: bool
    details: str = ""


MediaListener = Callable[[MediaEvent], None]


class MediaElement(Protocol):
    """Operations the playback controller needs from a media element."""

    @property
    def current_time(self) -> float:
        """Return the playback position in seconds."""
        ...

    @current_time.setter
    def current_time(self, value: float) -> None:
        """Seek to `value` seconds."""
        ...

    @property
    def duration(self) -> float:
        """Return the media length in seconds, NaN until known."""
        ...

    @property
    def paused(self) -> bool:
        """Return True when playback is not running."""
        ...

    def set_event_listener(self, listener: MediaListener | None) -> None:
        """Route media events to `listener`."""
        ...

    async def play(self) -> None:
        """Start playback; may raise if autoplay is refused."""
        ...

    def pause(self) -> None:
        """Pause playback."""
        ...

    def start_load(self) -> None:
        """Begin loading, or restart it after a network failure."""
        ...

    def recover_media_error(self) -> None:
        """Try to recover from a decode failure."""
        ...

    def destroy(self) -> None:
        """Release the media pipeline."""
        ...


class SimulatedMedia:
    """Headless media element whose position follows the event loop clock.

    Emits time updates roughly four times per second while playing, like a
    browser video element, and an end event when the duration is reached.
    """

    def __init__(
        self,
        duration: float,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        rate: float = 1.0,
        update_interval: float = TIME_UPDATE_INTERVAL,
    ) -> None:
        """Create a simulated media element of the given length."""
        if duration <= 0:
            raise ValueError("duration must be positive")
        self._duration = duration
        self._loop = loop
        self._rate = rate
        self._update_interval = update_interval
        self._listener: MediaListener | None = None
        self._position = 0.0
        self._anchor_loop_time: float | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._loaded = False
        self._destroyed = False
        self._seek_serial = 0

    @property
    def current_time(self) -> float:
        """Return the playback position in seconds."""
        if self._anchor_loop_time is None:
            return self._position
        elapsed = (self._get_loop().time() - self._anchor_loop_time) * self._rate
        return min(self._position + elapsed, self._duration)

    @current_time.setter
    def current_time(self, value: float) -> None:
        target = max(0.0, min(float(value), self._duration))
        self._seek_serial += 1
        serial = self._seek_serial
        self._reanchor(target)
        self._emit(MediaSeeking(target))
        if serial != self._seek_serial:
            # superseded by a seek issued from a listener
            return
        self._emit(MediaTimeUpdate(target))

    @property
    def duration(self) -> float:
        """Return the media length, NaN until loaded."""
        return self._duration if self._loaded else math.nan

    @property
    def paused(self) -> bool:
        """Return True when playback is not running."""
        return self._anchor_loop_time is None

    def set_event_listener(self, listener: MediaListener | None) -> None:
        """Route media events to `listener`."""
        self._listener = listener

    async def play(self) -> None:
        """Start playback."""
        if self._destroyed:
            raise RuntimeError("Media has been destroyed")
        if not self.paused:
            return
        if self._position >= self._duration:
            return
        self._anchor_loop_time = self._get_loop().time()
        self._emit(MediaPlay())
        self._ticker = self._get_loop().create_task(self._tick())

    def pause(self) -> None:
        """Pause playback."""
        if self.paused:
            return
        self._position = self.current_time
        self._anchor_loop_time = None
        self._stop_ticker()
        self._emit(MediaPause())

    def start_load(self) -> None:
        """Load the media and announce its duration, also used to reload."""
        logger.debug("Simulated media loading at %.1fs", self.current_time)
        self._loaded = True
        self._emit(MediaLoaded(self._duration))

    def recover_media_error(self) -> None:
        """Recover from a decode failure."""
        logger.debug("Simulated media recovering at %.1fs", self.current_time)
        self._emit(MediaLoaded(self._duration))

    def destroy(self) -> None:
        """Stop playback and detach the listener."""
        self._position = self.current_time
        self._anchor_loop_time = None
        self._stop_ticker()
        self._listener = None
        self._destroyed = True

    async def _tick(self) -> None:
        with suppress(asyncio.CancelledError):
            while not self.paused:
                await asyncio.sleep(self._update_interval)
                if self.paused:
                    break
                position = self.current_time
                self._emit(MediaTimeUpdate(position))
                if position >= self._duration:
                    self._position = self._duration
                    self._anchor_loop_time = None
                    self._ticker = None
                    self._emit(MediaPause())
                    self._emit(MediaEnded())
                    break

    def _reanchor(self, position: float) -> None:
        self._position = position
        if self._anchor_loop_time is not None:
            self._anchor_loop_time = self._get_loop().time()

    def _stop_ticker(self) -> None:
        if self._ticker is not None and self._ticker is not asyncio.current_task():
            self._ticker.cancel()
        self._ticker = None

    def _emit(self, event: MediaEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            logger.exception("Error in media listener")

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
