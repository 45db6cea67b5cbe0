"""Wire models for the webinar playback engine."""

from __future__ import annotations

__all__ = [
    "AnalyticsEventType",
    "ConnectionState",
    "FeedFilter",
    "InteractionEventType",
    "InteractionStatus",
    "InteractionType",
    "PlaybackMode",
    "ProgressEventType",
    "SessionType",
    "StreamErrorType",
    "UnloadSignal",
    "access",
    "chat",
    "interaction",
    "reports",
    "types",
]

from . import access, chat, interaction, reports, types
from .types import (
    AnalyticsEventType,
    ConnectionState,
    FeedFilter,
    InteractionEventType,
    InteractionStatus,
    InteractionType,
    PlaybackMode,
    ProgressEventType,
    SessionType,
    StreamErrorType,
    UnloadSignal,
)
