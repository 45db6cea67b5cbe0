"""One-way reports sent from the viewer to the server."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import AnalyticsEventType, ProgressEventType


@dataclass
class ProgressReport(DataClassORJSONMixin):
    """Watch progress, last write wins on the server."""

    token: str
    progress: float
    """Percentage of the video watched (0-100)."""
    position: float
    """Playback position in seconds."""
    event_type: ProgressEventType = field(metadata=field_options(alias="eventType"))
    completed: bool | None = None
    """Only set on the final report."""
    session_duration_seconds: int | None = field(
        default=None, metadata=field_options(alias="sessionDurationSeconds")
    )
    """Only set on the final report."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
        serialize_by_alias = True


@dataclass
class AnalyticsEvent(DataClassORJSONMixin):
    """Session analytics (attendance, exit, end screen)."""

    token: str
    event_type: AnalyticsEventType = field(metadata=field_options(alias="eventType"))
    metadata: dict[str, Any] = field(default_factory=dict)

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
