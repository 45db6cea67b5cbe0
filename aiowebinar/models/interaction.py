"""Interaction models.

Interactions are timed overlays (polls, quizzes, calls to action, downloads, ...)
defined by the webinar author. The definitions are immutable for a viewing
session; the per-viewer outcome of an interaction is tracked separately by the
timeline scheduler and recorded here as an `AnsweredInteraction` once the viewer
responds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import InteractionEventType, InteractionType


@dataclass(frozen=True)
class InteractionDefinition(DataClassORJSONMixin):
    """A time-indexed interaction as authored for the webinar."""

    id: str
    """Identifier of the interaction."""
    type: InteractionType
    """Kind of overlay, only inspected when rendering."""
    trigger_time: int = field(metadata=field_options(alias="triggerTime"))
    """Offset in seconds from the start of the video."""
    title: str = ""
    """Headline shown with the overlay."""
    config: dict[str, Any] = field(default_factory=dict)
    """Type-specific options (poll options, button url, ...)."""
    duration_seconds: int | None = field(
        default=None, metadata=field_options(alias="durationSeconds")
    )
    """How long the overlay stays active, falls back to config["duration"]."""
    pause_video: bool = field(default=False, metadata=field_options(alias="pauseVideo"))
    """Pause playback while this interaction is active."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
        serialize_by_alias = True

    def effective_duration(self, default: int) -> int:
        """Return the display window length in seconds."""
        if self.duration_seconds is not None:
            return self.duration_seconds
        configured = self.config.get("duration")
        if isinstance(configured, int | float) and not isinstance(configured, bool):
            return int(configured)
        return default


@dataclass(frozen=True)
class AnsweredInteraction:
    """An interaction together with the viewer's response."""

    definition: InteractionDefinition
    user_response: dict[str, Any]
    answered_at: datetime


@dataclass
class PollResultOption(DataClassORJSONMixin):
    """Tally for one option of a poll or quiz."""

    option: str
    index: int
    count: int
    percentage: int


@dataclass
class PollResults(DataClassORJSONMixin):
    """Distribution of all viewers' answers to a poll or quiz."""

    options: list[PollResultOption]
    """One entry per option, in authoring order."""
    total_responses: int = field(metadata=field_options(alias="totalResponses"))
    """Number of viewers that responded."""
    user_response: list[int] | None = field(
        default=None, metadata=field_options(alias="userResponse")
    )
    """Option indices selected by the requesting viewer, if any."""
    has_responded: bool = field(default=False, metadata=field_options(alias="hasResponded"))
    """Whether the requesting viewer responded before."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True


@dataclass
class PollResultsEnvelope(DataClassORJSONMixin):
    """Response body of the results endpoint."""

    results: PollResults | None = None


@dataclass
class InteractionResponseRequest(DataClassORJSONMixin):
    """Body posted to the interaction response endpoint."""

    token: str
    interaction_id: str = field(metadata=field_options(alias="interactionId"))
    response: dict[str, Any]
    event_type: InteractionEventType = field(metadata=field_options(alias="eventType"))

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
