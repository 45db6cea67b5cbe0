"""aiowebinar: simulated-live webinar playback engine."""

from __future__ import annotations

# Re-export the session API for easy import
from aiowebinar.api import WebinarApiClient
from aiowebinar.channel import RealtimeChannel, WebSocketChannel, channel_name
from aiowebinar.config import EngineConfig
from aiowebinar.errors import (
    AccessDeniedError,
    AccessError,
    ChatSendError,
    InteractionSubmitError,
    ReplayDisabledError,
    ReplayExpiredError,
    SessionEndedError,
    WebinarError,
)
from aiowebinar.player import PlaybackController, PlaybackSession, SimulatedMedia
from aiowebinar.session import WatchSession
from aiowebinar.timeline import InteractionScheduler

__all__ = [
    "AccessDeniedError",
    "AccessError",
    "ChatSendError",
    "EngineConfig",
    "InteractionScheduler",
    "InteractionSubmitError",
    "PlaybackController",
    "PlaybackSession",
    "RealtimeChannel",
    "ReplayDisabledError",
    "ReplayExpiredError",
    "SessionEndedError",
    "SimulatedMedia",
    "WatchSession",
    "WebSocketChannel",
    "WebinarApiClient",
    "WebinarError",
    "channel_name",
]
