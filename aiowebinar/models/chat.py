"""Chat models and real-time channel frames.

Chat messages reach the viewer either live through the real-time channel or
gradually from the simulated transcript of the webinar. Both carry the same
shape and are deduplicated by `id`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from mashumaro import field_options
from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ChannelClientMessage, ChannelServerMessage, UtcDateTime


@dataclass(frozen=True)
class ChatMessage(DataClassORJSONMixin):
    """A chat message, live or simulated."""

    id: str
    """Identifier used for deduplication across sources."""
    sender_name: str = field(metadata=field_options(alias="senderName"))
    """Display name of the author."""
    message: str
    """Message text."""
    created_at: datetime = field(metadata=field_options(alias="createdAt"))
    """Effective timestamp used to order the feed."""
    is_from_moderator: bool = field(default=False, metadata=field_options(alias="isFromModerator"))
    """Sent by a host or moderator."""
    is_simulated: bool = field(default=False, metadata=field_options(alias="isSimulated"))
    """Part of the pre-scripted transcript."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialization_strategy = {datetime: UtcDateTime()}
        serialize_by_alias = True


@dataclass
class SimulatedChatWindow(DataClassORJSONMixin):
    """Response body of the simulated chat window endpoint."""

    messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class ChatSendRequest(DataClassORJSONMixin):
    """Body posted to the chat endpoint."""

    token: str
    message: str


# Client -> Channel frames
@dataclass
class SubscribeMessage(ChannelClientMessage):
    """Subscribe to the chat channel of a webinar."""

    channel: str
    type: Literal["subscribe"] = "subscribe"


@dataclass
class HistoryRequestMessage(ChannelClientMessage):
    """Ask for the most recent messages of the channel."""

    limit: int
    request_id: str = field(metadata=field_options(alias="requestId"))
    type: Literal["history"] = "history"


# Channel -> Client frames
@dataclass
class ChatMessageFrame(ChannelServerMessage):
    """A message published on the channel."""

    data: ChatMessage
    type: Literal["message"] = "message"


@dataclass
class HistoryResponseFrame(ChannelServerMessage):
    """Answer to a history request."""

    request_id: str = field(metadata=field_options(alias="requestId"))
    messages: list[ChatMessage] = field(default_factory=list)
    type: Literal["history"] = "history"
