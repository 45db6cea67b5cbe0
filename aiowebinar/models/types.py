"""Enum types and message base classes used by aiowebinar."""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator, SerializationStrategy


class UtcDateTime(SerializationStrategy):
    """ISO 8601 timestamps, read as UTC when they carry no offset."""

    def serialize(self, value: datetime) -> str:
        return value.isoformat()

    def deserialize(self, value: str) -> datetime:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed


# Base message classes
@dataclass
class ChannelClientMessage(DataClassORJSONMixin):
    """Base class for frames sent to the real-time channel."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)
        serialize_by_alias = True


@dataclass
class ChannelServerMessage(DataClassORJSONMixin):
    """Base class for frames received from the real-time channel."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)
        serialize_by_alias = True


# Enums


class SessionType(Enum):
    """How the viewer registered for the webinar."""

    SCHEDULED = "SCHEDULED"
    JUST_IN_TIME = "JUST_IN_TIME"
    ON_DEMAND = "ON_DEMAND"
    REPLAY = "REPLAY"


class PlaybackMode(Enum):
    """How the video is presented to the viewer."""

    SIMULATED_LIVE = "simulated_live"
    """Wall-clock synchronised, no seeking behind the live edge."""
    ON_DEMAND = "on_demand"
    """Free playback resuming from the last watched position."""
    REPLAY = "replay"
    """Recording of a past session with seeking allowed."""


class InteractionType(Enum):
    """Kinds of timed overlays a webinar can schedule."""

    POLL = "POLL"
    QUIZ = "QUIZ"
    CTA = "CTA"
    FEEDBACK = "FEEDBACK"
    QUESTION = "QUESTION"
    TIP = "TIP"
    DOWNLOAD = "DOWNLOAD"
    PAUSE = "PAUSE"
    SPECIAL_OFFER = "SPECIAL_OFFER"
    CONTACT_FORM = "CONTACT_FORM"

    @property
    def shows_results(self) -> bool:
        """Return True for types that display an aggregate of all answers."""
        return self in (InteractionType.POLL, InteractionType.QUIZ)


class InteractionStatus(Enum):
    """Per-viewer lifecycle state of one interaction."""

    PENDING = "pending"
    """Not reached yet."""
    ACTIVE = "active"
    """Triggered, inside its display window, untouched."""
    EXPIRED = "expired"
    """Triggered, window elapsed without a response."""
    DISMISSED = "dismissed"
    """Closed by the viewer without responding."""
    ANSWERED = "answered"
    """The viewer submitted a response."""


class InteractionEventType(Enum):
    """Event types accepted by the interaction response endpoint."""

    VIEWED = "VIEWED"
    DISMISSED = "DISMISSED"
    RESPONDED = "RESPONDED"
    CLICKED = "CLICKED"
    DOWNLOADED = "DOWNLOADED"


class ProgressEventType(Enum):
    """Event types accepted by the progress endpoint."""

    VIDEO_HEARTBEAT = "VIDEO_HEARTBEAT"
    VIDEO_COMPLETED = "VIDEO_COMPLETED"
    VIDEO_FINAL = "VIDEO_FINAL"


class AnalyticsEventType(Enum):
    """Event types accepted by the analytics endpoint."""

    ATTENDANCE = "ATTENDANCE"
    LEFT_EARLY = "LEFT_EARLY"
    END_SCREEN_VIEWED = "END_SCREEN_VIEWED"
    END_SCREEN_CTA_CLICKED = "END_SCREEN_CTA_CLICKED"
    END_SCREEN_REDIRECTED = "END_SCREEN_REDIRECTED"


class ConnectionState(Enum):
    """Observable state of the real-time channel."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class FeedFilter(Enum):
    """Display filter for the merged feed."""

    ALL = "all"
    CHAT_ONLY = "chat-only"
    WIDGETS_ONLY = "widgets-only"


class StreamErrorType(Enum):
    """Failure layers reported by the media pipeline."""

    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


class UnloadSignal(Enum):
    """Page-teardown style signals that end a viewing session."""

    BEFORE_UNLOAD = "before_unload"
    PAGE_HIDDEN = "page_hidden"
    CLOSED = "closed"
