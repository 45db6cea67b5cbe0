"""Playback side of a watch session: media, position control and progress reports."""

from .controller import (
    PlaybackController,
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackEvent,
    PlaybackSession,
    PlaybackStartedEvent,
    TimeUpdateEvent,
    compute_start_position,
    progress_percent,
)
from .heartbeat import HeartbeatReporter
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
    SimulatedMedia,
)

__all__ = [
    "HeartbeatReporter",
    "MediaElement",
    "MediaEnded",
    "MediaError",
    "MediaEvent",
    "MediaLoaded",
    "MediaPause",
    "MediaPlay",
    "MediaSeeking",
    "MediaTimeUpdate",
    "PlaybackController",
    "PlaybackEndedEvent",
    "PlaybackErrorEvent",
    "PlaybackEvent",
    "PlaybackSession",
    "PlaybackStartedEvent",
    "SimulatedMedia",
    "TimeUpdateEvent",
    "compute_start_position",
    "progress_percent",
]
