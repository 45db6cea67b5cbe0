"""Playback position controller.

Owns the media element of a viewing session: positions it at the correct
offset when media loads, enforces the no-seek policy of simulated live
playback, recovers from stream failures and gates play/pause while an
interaction holds the video.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from aiowebinar.config import AUTOPLAY_DELAY_SECONDS, MAX_RECOVERY_ATTEMPTS
from aiowebinar.models.access import AccessGranted
from aiowebinar.models.types import PlaybackMode, SessionType, StreamErrorType

from .media import (
    MediaElement,
    MediaEnded,
    MediaError,
    MediaEvent,
    MediaLoaded,
    MediaPause,
    MediaPlay,
    MediaSeeking,
    MediaTimeUpdate,
)

logger = logging.getLogger(__name__)

# Backward seeks smaller than this are tolerated in simulated live mode.
SEEK_TOLERANCE_SECONDS = 1.0


def compute_start_position(
    mode: PlaybackMode,
    *,
    allow_seeking: bool,
    now: datetime,
    session_start: datetime | None = None,
    video_duration: float | None = None,
    last_position: float = 0.0,
) -> float:
    """Return the playback offset a viewer should start at.

    Simulated live viewers join at the live point, the time elapsed since the
    session started, kept one second short of the end of the video. Everyone
    else resumes from their last watched position when seeking is allowed.
    """
    if mode is PlaybackMode.SIMULATED_LIVE:
        if session_start is None:
            return 0.0
        elapsed = math.floor((now - session_start).total_seconds())
        if video_duration is not None and video_duration > 0:
            elapsed = min(elapsed, video_duration - 1)
        return float(max(0, elapsed))
    if allow_seeking and last_position > 0:
        return float(last_position)
    return 0.0


def progress_percent(current_time: float, duration: float | None) -> float:
    """Return the watched percentage of the video."""
    if not duration or duration <= 0 or math.isnan(duration):
        return 0.0
    return min(100.0, max(0.0, current_time / duration * 100))


@dataclass(frozen=True)
class PlaybackSession:
    """Playback parameters of one viewer for one page load."""

    session_type: SessionType
    playback_mode: PlaybackMode
    allow_seeking: bool
    start_position: float
    loaded_at: datetime
    session_start_wall_clock: datetime | None = None
    last_reported_position: float = 0.0

    @classmethod
    def from_access(cls, access: AccessGranted, now: datetime | None = None) -> PlaybackSession:
        """Build the session from the access payload.

        When the server does not send the session start, it is derived from
        the server computed start position so reloads still land on the live
        point.
        """
        loaded_at = now or datetime.now(UTC)
        playback = access.playback
        session_start = access.session_starts_at
        if playback.mode is PlaybackMode.SIMULATED_LIVE and session_start is None:
            session_start = loaded_at - timedelta(seconds=playback.start_position)
        if playback.mode is not PlaybackMode.SIMULATED_LIVE:
            session_start = None
        return cls(
            session_type=access.access.session_type,
            playback_mode=playback.mode,
            allow_seeking=playback.allow_seeking,
            start_position=playback.start_position,
            loaded_at=loaded_at,
            session_start_wall_clock=session_start,
            last_reported_position=playback.last_position,
        )

    @property
    def is_simulated_live(self) -> bool:
        """Return True for wall-clock synchronised playback."""
        return self.playback_mode is PlaybackMode.SIMULATED_LIVE

    def live_position(self, now: datetime, duration: float | None) -> float:
        """Return the live point at `now`."""
        return compute_start_position(
            self.playback_mode,
            allow_seeking=self.allow_seeking,
            now=now,
            session_start=self.session_start_wall_clock,
            video_duration=duration,
        )

    def anchor(self) -> datetime:
        """Return the wall-clock instant matching playback position zero."""
        if self.session_start_wall_clock is not None:
            return self.session_start_wall_clock
        return self.loaded_at - timedelta(seconds=self.start_position)


class PlaybackEvent:
    """Base event type used by PlaybackController.add_event_listener()."""


@dataclass
class TimeUpdateEvent(PlaybackEvent):
    """The playback position moved."""

    current_time: float
    """Position in seconds."""
    duration: float | None
    """Best known length of the video in seconds."""


@dataclass
class PlaybackStartedEvent(PlaybackEvent):
    """Playback started for the first time."""


@dataclass
class PlaybackEndedEvent(PlaybackEvent):
    """Playback reached the end of the video."""


@dataclass
class PlaybackErrorEvent(PlaybackEvent):
    """Playback stopped because of an unrecoverable stream failure."""

    message: str


PlaybackCallback = Callable[[PlaybackEvent], Awaitable[None] | None]


class PlaybackController:
    """Drives a media element according to the playback session."""

    def __init__(
        self,
        media: MediaElement,
        session: PlaybackSession,
        *,
        duration_hint: float | None = None,
        autoplay_delay: float = AUTOPLAY_DELAY_SECONDS,
        max_recovery_attempts: int = MAX_RECOVERY_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a controller; call `attach()` to start receiving media events."""
        self._media = media
        self._session = session
        self._duration = duration_hint
        self._autoplay_delay = autoplay_delay
        self._max_recovery_attempts = max_recovery_attempts
        self._clock = clock or (lambda: datetime.now(UTC))
        self._event_cbs: list[PlaybackCallback] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._current_time = 0.0
        self._last_valid_time = 0.0
        self._load_count = 0
        self._is_playing = False
        self._has_started = False
        self._has_ended = False
        self._stopped = False
        self._closed = False
        self._paused_for_interaction = False
        self._was_playing_before_interaction = False
        self._recovery_attempts = 0
        self._recovery_position = 0.0

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def session(self) -> PlaybackSession:
        """Return the playback session."""
        return self._session

    @property
    def current_time(self) -> float:
        """Return the last reported playback position."""
        return self._current_time

    @property
    def duration(self) -> float | None:
        """Return the best known video length."""
        return self._duration

    @property
    def last_valid_time(self) -> float:
        """Return the furthest position reached through normal playback."""
        return self._last_valid_time

    @property
    def is_playing(self) -> bool:
        """Return True while the media is playing."""
        return self._is_playing

    @property
    def has_started(self) -> bool:
        """Return True once playback started at least once."""
        return self._has_started

    @property
    def has_ended(self) -> bool:
        """Return True once the video played to the end."""
        return self._has_ended

    @property
    def stopped(self) -> bool:
        """Return True after an unrecoverable stream failure."""
        return self._stopped

    @property
    def paused_for_interaction(self) -> bool:
        """Return True while an interaction holds the video."""
        return self._paused_for_interaction

    @property
    def progress(self) -> float:
        """Return the watched percentage."""
        return progress_percent(self._current_time, self._duration)

    def attach(self) -> None:
        """Start receiving events from the media element."""
        self._media.set_event_listener(self.handle_media_event)

    def add_event_listener(self, callback: PlaybackCallback) -> Callable[[], None]:
        """Register a callback for time updates, start, end and errors.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def set_paused_for_interaction(self, paused: bool) -> None:
        """Hold or release the video on behalf of an interaction."""
        if paused == self._paused_for_interaction or self._closed:
            return
        self._paused_for_interaction = paused
        if paused:
            self._was_playing_before_interaction = not self._media.paused
            self._media.pause()
            logger.debug("Paused for interaction (was playing: %s)", self._was_playing_before_interaction)
        elif self._was_playing_before_interaction:
            self._was_playing_before_interaction = False
            self._schedule_play(0)

    def toggle_play_pause(self) -> bool:
        """Toggle playback, return False if blocked by an interaction."""
        if self._paused_for_interaction or self._stopped or self._closed:
            return False
        if self._media.paused:
            self._schedule_play(0)
        else:
            self._media.pause()
        return True

    def handle_media_event(self, event: MediaEvent) -> None:
        """Process one media event; events after close are ignored."""
        if self._closed:
            return
        match event:
            case MediaLoaded(duration=duration):
                self._handle_loaded(duration)
            case MediaTimeUpdate(current_time=current_time):
                self._handle_time_update(current_time)
            case MediaSeeking(target=target):
                self._handle_seeking(target)
            case MediaPlay():
                self._handle_play()
            case MediaPause():
                self._is_playing = False
            case MediaEnded():
                self._handle_ended()
            case MediaError():
                self._handle_error(event)
            case _:
                logger.debug("Unhandled media event: %s", type(event).__name__)

    async def close(self) -> None:
        """Detach from the media element and cancel pending work."""
        self._closed = True
        self._media.set_event_listener(None)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _handle_loaded(self, duration: float) -> None:
        if duration and not math.isnan(duration) and duration > 0:
            self._duration = duration
        first_load = self._load_count == 0
        self._load_count += 1

        if self._session.is_simulated_live:
            # The live point moves on while media reloads, always rejoin it.
            target = self._session.live_position(self._clock(), self._duration)
        elif not first_load:
            target = self._current_time
        elif self._session.allow_seeking:
            target = self._session.start_position
        else:
            target = 0.0

        if self._duration:
            target = min(target, max(0.0, self._duration - 1))

        if target > 0:
            logger.debug("Positioning media at %.1fs (load #%d)", target, self._load_count)
            if self._session.is_simulated_live:
                self._last_valid_time = target
            self._current_time = target
            self._media.current_time = target

        if not self._paused_for_interaction and not self._has_ended:
            self._schedule_play(self._autoplay_delay)

    def _handle_time_update(self, current_time: float) -> None:
        if math.isnan(current_time):
            return
        self._current_time = current_time
        if current_time > self._last_valid_time:
            self._last_valid_time = current_time
        if self._recovery_attempts and current_time > self._recovery_position + 1:
            self._recovery_attempts = 0
        self._signal_event(TimeUpdateEvent(current_time=current_time, duration=self._duration))

    def _handle_seeking(self, target: float) -> None:
        if (
            not self._session.allow_seeking
            and self._session.is_simulated_live
            and target < self._last_valid_time - SEEK_TOLERANCE_SECONDS
        ):
            logger.debug(
                "Rejecting seek to %.1fs behind live position %.1fs", target, self._last_valid_time
            )
            self._media.current_time = self._last_valid_time
            return
        if target > self._last_valid_time:
            self._last_valid_time = target

    def _handle_play(self) -> None:
        self._is_playing = True
        if not self._has_started:
            self._has_started = True
            logger.info("Playback started at %.1fs", self._current_time)
            self._signal_event(PlaybackStartedEvent())

    def _handle_ended(self) -> None:
        self._is_playing = False
        if self._has_ended:
            return
        self._has_ended = True
        logger.info("Playback ended")
        self._signal_event(PlaybackEndedEvent())

    def _handle_error(self, error: MediaError) -> None:
        if not error.fatal:
            logger.warning("Non-fatal %s stream error: %s", error.error_type.value, error.details)
            return
        if self._stopped:
            return

        self._recovery_attempts += 1
        self._recovery_position = self._current_time
        if self._recovery_attempts > self._max_recovery_attempts:
            self._fail(f"Video playback error: {error.details or error.error_type.value}")
            return

        match error.error_type:
            case StreamErrorType.NETWORK:
                logger.error("Stream network error, reloading: %s", error.details)
                self._media.start_load()
            case StreamErrorType.MEDIA:
                logger.error("Stream media error, recovering: %s", error.details)
                self._media.recover_media_error()
            case _:
                self._fail(f"Video playback error: {error.details or 'unknown'}")

    def _fail(self, message: str) -> None:
        logger.error("%s", message)
        self._stopped = True
        self._is_playing = False
        self._media.destroy()
        self._signal_event(PlaybackErrorEvent(message))

    def _schedule_play(self, delay: float) -> None:
        task = asyncio.get_running_loop().create_task(self._play_after(delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _play_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if self._closed or self._stopped or self._paused_for_interaction:
            return
        try:
            await self._media.play()
        except Exception as err:
            # Autoplay refusals are expected, the viewer can start manually.
            logger.info("Autoplay prevented, user interaction required: %s", err)

    def _signal_event(self, event: PlaybackEvent) -> None:
        for callback in list(self._event_cbs):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Error in playback callback %s", callback)
