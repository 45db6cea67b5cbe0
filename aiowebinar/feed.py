"""Unified chat and interaction feed.

Three sources are merged into one time-ordered list:

* live chat delivered by the real-time channel, plus its recent backlog,
* the simulated transcript, revealed window by window as playback advances
  (simulated live only),
* the interactions the timeline has triggered so far.

`FeedState` and `reduce_feed` hold the chat side as a pure reducer; `build_feed`
is a pure merge. `LiveFeed` wires the sources to them for one viewing session.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Literal, Protocol

from aiohttp import ClientError

from aiowebinar.channel import RealtimeChannel
from aiowebinar.config import CHAT_HISTORY_LIMIT
from aiowebinar.errors import ChatSendError
from aiowebinar.models.chat import ChatMessage
from aiowebinar.models.types import ConnectionState, FeedFilter
from aiowebinar.timeline import TriggeredInteraction

logger = logging.getLogger(__name__)


# Events


class FeedEvent:
    """Base class of inputs to `reduce_feed`."""


@dataclass(frozen=True)
class MessageReceived(FeedEvent):
    """A live message arrived on the channel."""

    message: ChatMessage


@dataclass(frozen=True)
class HistoryLoaded(FeedEvent):
    """The channel backlog was fetched after connecting."""

    messages: tuple[ChatMessage, ...]


@dataclass(frozen=True)
class HistoricalBatchFetched(FeedEvent):
    """A window of the simulated transcript was fetched."""

    messages: tuple[ChatMessage, ...]
    up_to_second: int


@dataclass(frozen=True)
class ConnectionChanged(FeedEvent):
    """The channel connection state changed."""

    state: ConnectionState


# State


@dataclass(frozen=True)
class FeedState:
    """Chat messages held for display plus source bookkeeping."""

    messages: tuple[ChatMessage, ...] = ()
    seen_ids: frozenset[str] = frozenset()
    last_fetched_second: int = 0
    connection: ConnectionState = ConnectionState.CONNECTING


def _append_unique(state: FeedState, messages: Iterable[ChatMessage]) -> FeedState:
    seen = set(state.seen_ids)
    fresh: list[ChatMessage] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        fresh.append(message)
    if not fresh:
        return state
    return replace(state, messages=state.messages + tuple(fresh), seen_ids=frozenset(seen))


def reduce_feed(state: FeedState, event: FeedEvent) -> FeedState:
    """Apply one event and return the resulting state."""
    match event:
        case MessageReceived(message=message):
            return _append_unique(state, (message,))
        case HistoryLoaded(messages=messages):
            merged = _append_unique(state, messages)
            if merged is state:
                return state
            ordered = tuple(sorted(merged.messages, key=lambda m: m.created_at))
            return replace(merged, messages=ordered)
        case HistoricalBatchFetched(messages=messages, up_to_second=up_to_second):
            merged = _append_unique(state, messages)
            if up_to_second > merged.last_fetched_second:
                merged = replace(merged, last_fetched_second=up_to_second)
            return merged
        case ConnectionChanged(state=connection):
            if connection is state.connection:
                return state
            return replace(state, connection=connection)
        case _:
            raise TypeError(f"Unsupported feed event: {event!r}")


# Merge


@dataclass(frozen=True)
class ChatFeedItem:
    """A chat message placed in the feed."""

    data: ChatMessage
    timestamp: datetime
    kind: Literal["chat"] = "chat"

    @property
    def key(self) -> tuple[str, str]:
        """Return the identity of the item within the feed."""
        return (self.kind, self.data.id)


@dataclass(frozen=True)
class InteractionFeedItem:
    """A triggered interaction placed in the feed."""

    data: TriggeredInteraction
    timestamp: datetime
    kind: Literal["interaction"] = "interaction"

    @property
    def key(self) -> tuple[str, str]:
        """Return the identity of the item within the feed."""
        return (self.kind, self.data.id)


FeedItem = ChatFeedItem | InteractionFeedItem


def build_feed(
    messages: Sequence[ChatMessage],
    triggered: Sequence[TriggeredInteraction],
    anchor: datetime,
    feed_filter: FeedFilter = FeedFilter.ALL,
) -> list[FeedItem]:
    """Merge chat and interactions into one list ordered by effective time.

    `anchor` is the wall-clock instant corresponding to playback position zero;
    an interaction's effective time is `anchor + trigger_time`.
    """
    items: list[FeedItem] = []
    seen: set[tuple[str, str]] = set()
    candidates: list[FeedItem] = [ChatFeedItem(m, m.created_at) for m in messages]
    candidates.extend(
        InteractionFeedItem(t, anchor + timedelta(seconds=t.trigger_time)) for t in triggered
    )
    for item in candidates:
        if item.key in seen:
            continue
        seen.add(item.key)
        items.append(item)
    items.sort(key=lambda item: item.timestamp)

    if feed_filter is FeedFilter.CHAT_ONLY:
        return [item for item in items if isinstance(item, ChatFeedItem)]
    if feed_filter is FeedFilter.WIDGETS_ONLY:
        return [item for item in items if isinstance(item, InteractionFeedItem)]
    return items


# Stateful wrapper


class ChatBackend(Protocol):
    """HTTP operations the feed needs."""

    async def fetch_simulated_chat(self, from_second: int, to_second: int) -> list[ChatMessage]:
        """Return transcript messages timed within `(from_second, to_second]`."""
        ...

    async def send_chat(self, message: str) -> None:
        """Post a chat message."""
        ...


FeedCallback = Callable[[FeedState], Awaitable[None] | None]


class LiveFeed:
    """Collects chat for one viewer and merges it with triggered interactions."""

    def __init__(
        self,
        channel: RealtimeChannel | None,
        backend: ChatBackend,
        *,
        simulated: bool,
        history_limit: int = CHAT_HISTORY_LIMIT,
        start_second: int = 0,
    ) -> None:
        """Create the feed.

        `simulated` enables the transcript source; `start_second` is the
        playback position the transcript has already been revealed up to.
        """
        self._channel = channel
        self._backend = backend
        self._simulated = simulated
        self._history_limit = history_limit
        self._state = FeedState(last_fetched_second=max(0, start_second))
        self._listeners: list[FeedCallback] = []
        self._unsubscribers: list[Callable[[], None]] = []
        self._fetch_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def state(self) -> FeedState:
        """Return the current chat state."""
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        """Return the channel connection state."""
        return self._state.connection

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        """Return the chat messages held so far, in arrival order."""
        return self._state.messages

    def items(
        self,
        triggered: Sequence[TriggeredInteraction],
        anchor: datetime,
        feed_filter: FeedFilter = FeedFilter.ALL,
    ) -> list[FeedItem]:
        """Return the merged, filtered feed."""
        return build_feed(self._state.messages, triggered, anchor, feed_filter)

    def add_listener(self, callback: FeedCallback) -> Callable[[], None]:
        """Register a callback invoked whenever the chat state changes.

        Returns a function to remove the listener.
        """
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    async def start(self) -> None:
        """Subscribe to the channel and load its recent backlog.

        Connection failures are logged; the feed keeps working on the
        transcript source alone.
        """
        if self._channel is None:
            self.dispatch(ConnectionChanged(ConnectionState.DISCONNECTED))
            return
        self._unsubscribers.append(self._channel.subscribe(self._on_channel_message))
        self._unsubscribers.append(self._channel.add_state_listener(self._on_channel_state))
        try:
            await self._channel.connect()
        except (ConnectionError, ClientError, TimeoutError) as err:
            logger.warning("Live chat unavailable: %s", err)
            self.dispatch(ConnectionChanged(self._channel.state))
            return
        self.dispatch(ConnectionChanged(self._channel.state))
        await self._load_history()

    def on_time_update(self, current_time: float) -> None:
        """Reveal the transcript up to the current playback second."""
        if not self._simulated or self._closed or math.isnan(current_time):
            return
        current_second = math.floor(current_time)
        if current_second <= self._state.last_fetched_second:
            return
        if self._fetch_task is not None and not self._fetch_task.done():
            return
        self._fetch_task = asyncio.get_running_loop().create_task(
            self._fetch_window(self._state.last_fetched_second, current_second)
        )

    async def send(self, text: str) -> None:
        """Send a chat message, raising `ChatSendError` on failure."""
        text = text.strip()
        if not text:
            return
        try:
            await self._backend.send_chat(text)
        except ChatSendError:
            logger.error("Failed to send chat message")
            raise

    def dispatch(self, event: FeedEvent) -> None:
        """Apply an event to the chat state and notify listeners on change."""
        if self._closed:
            return
        new_state = reduce_feed(self._state, event)
        if new_state is self._state:
            return
        self._state = new_state
        for callback in list(self._listeners):
            try:
                result = callback(new_state)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Error in feed listener %s", callback)

    async def close(self) -> None:
        """Stop all sources; late results are discarded."""
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._fetch_task is not None:
            self._fetch_task.cancel()
            self._fetch_task = None
        for task in list(self._tasks):
            task.cancel()
        if self._channel is not None:
            await self._channel.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_channel_message(self, message: ChatMessage) -> None:
        self.dispatch(MessageReceived(message))

    def _on_channel_state(self, state: ConnectionState) -> None:
        self.dispatch(ConnectionChanged(state))

    async def _load_history(self) -> None:
        if self._channel is None or self._history_limit <= 0:
            return
        try:
            history = await self._channel.history(self._history_limit)
        except (ConnectionError, ClientError, TimeoutError) as err:
            logger.warning("Failed to load chat history: %s", err)
            return
        logger.debug("Loaded %d chat messages from history", len(history))
        self.dispatch(HistoryLoaded(tuple(history)))

    async def _fetch_window(self, from_second: int, to_second: int) -> None:
        try:
            messages = await self._backend.fetch_simulated_chat(from_second, to_second)
        except (ClientError, TimeoutError, ValueError, LookupError) as err:
            logger.warning(
                "Failed to load simulated messages for %s-%ss: %s", from_second, to_second, err
            )
            return
        if self._closed:
            return
        self.dispatch(HistoricalBatchFetched(tuple(messages), to_second))
