"""Access endpoint models.

The access endpoint is the entry point of a viewing session: it validates the
viewer's token and returns everything the engine needs for one page load, or
tells the viewer to wait for the scheduled start.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .interaction import InteractionDefinition
from .types import PlaybackMode, SessionType, UtcDateTime


@dataclass
class AccessInfo(DataClassORJSONMixin):
    """Registration the access token belongs to."""

    registration_id: str = field(metadata=field_options(alias="registrationId"))
    session_type: SessionType = field(metadata=field_options(alias="sessionType"))
    email: str = ""
    first_name: str | None = field(default=None, metadata=field_options(alias="firstName"))
    last_name: str | None = field(default=None, metadata=field_options(alias="lastName"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
        serialize_by_alias = True

    @property
    def display_name(self) -> str:
        """Return the name used when posting chat messages."""
        if self.first_name:
            return self.first_name
        return self.email.split("@")[0] or "Guest"


@dataclass
class WebinarInfo(DataClassORJSONMixin):
    """The webinar being watched."""

    id: str
    title: str
    hls_url: str = field(metadata=field_options(alias="hlsUrl"))
    duration: float | None = None
    """Video length in seconds, if known ahead of loading the media."""
    description: str | None = None
    thumbnail_url: str | None = field(default=None, metadata=field_options(alias="thumbnailUrl"))
    presenter_name: str | None = field(default=None, metadata=field_options(alias="presenterName"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
        serialize_by_alias = True


@dataclass
class PlaybackInfo(DataClassORJSONMixin):
    """Playback parameters computed by the server for this viewer."""

    mode: PlaybackMode
    allow_seeking: bool = field(metadata=field_options(alias="allowSeeking"))
    start_position: float = field(default=0.0, metadata=field_options(alias="startPosition"))
    last_position: float = field(default=0.0, metadata=field_options(alias="lastPosition"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class ChatInfo(DataClassORJSONMixin):
    """Chat availability."""

    enabled: bool = False


@dataclass
class EndScreenConfig(DataClassORJSONMixin):
    """Screen shown once the video completes."""

    enabled: bool = False
    title: str | None = None
    message: str | None = None
    button_text: str | None = field(default=None, metadata=field_options(alias="buttonText"))
    button_url: str | None = field(default=None, metadata=field_options(alias="buttonUrl"))
    redirect_url: str | None = field(default=None, metadata=field_options(alias="redirectUrl"))
    redirect_delay: float | None = field(default=None, metadata=field_options(alias="redirectDelay"))
    """Minutes before the automatic redirect."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
        serialize_by_alias = True


@dataclass
class AccessGranted(DataClassORJSONMixin):
    """Successful response of the access endpoint."""

    access: AccessInfo
    webinar: WebinarInfo
    playback: PlaybackInfo
    interactions: list[InteractionDefinition] = field(default_factory=list)
    chat: ChatInfo = field(default_factory=ChatInfo)
    end_screen: EndScreenConfig | None = field(
        default=None, metadata=field_options(alias="endScreen")
    )
    session_starts_at: datetime | None = field(
        default=None, metadata=field_options(alias="sessionStartsAt")
    )
    """Scheduled start of the live session, for simulated live playback."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialization_strategy = {datetime: UtcDateTime()}
        omit_none = True
        serialize_by_alias = True


@dataclass
class WaitingRoom(DataClassORJSONMixin):
    """The session has not opened yet."""

    starts_at: datetime = field(metadata=field_options(alias="startsAt"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialization_strategy = {datetime: UtcDateTime()}
        serialize_by_alias = True


@dataclass
class AccessDenied(DataClassORJSONMixin):
    """Error body of the access endpoint."""

    error: str | None = None
    waiting_room: bool = field(default=False, metadata=field_options(alias="waitingRoom"))
    starts_at: datetime | None = field(default=None, metadata=field_options(alias="startsAt"))
    session_ended: bool = field(default=False, metadata=field_options(alias="sessionEnded"))
    replay_expired: bool = field(default=False, metadata=field_options(alias="replayExpired"))
    replay_disabled: bool = field(default=False, metadata=field_options(alias="replayDisabled"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialization_strategy = {datetime: UtcDateTime()}
        omit_none = True
        serialize_by_alias = True
