"""Real-time chat channel.

The engine only needs three operations from the publish/subscribe transport:
subscribe with a callback, fetch a bounded recent history, and observe the
connection state. `RealtimeChannel` names them; `WebSocketChannel` implements
them over a plain JSON websocket.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Protocol

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiowebinar.config import CHANNEL_MAX_BACKOFF_SECONDS
from aiowebinar.models.chat import (
    ChatMessage,
    ChatMessageFrame,
    HistoryRequestMessage,
    HistoryResponseFrame,
    SubscribeMessage,
)
from aiowebinar.models.types import ChannelServerMessage, ConnectionState

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ChatMessage], Awaitable[None] | None]
StateCallback = Callable[[ConnectionState], Awaitable[None] | None]


def channel_name(webinar_id: str) -> str:
    """Return the channel name scoped to a webinar."""
    return f"webinar:{webinar_id}:chat"


class RealtimeChannel(Protocol):
    """Publish/subscribe channel carrying live chat for one webinar."""

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        ...

    async def connect(self) -> None:
        """Open the connection."""
        ...

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        """Register a message callback, returning a function that removes it."""
        ...

    def add_state_listener(self, callback: StateCallback) -> Callable[[], None]:
        """Register a connection state callback, returning a remover."""
        ...

    async def history(self, limit: int) -> list[ChatMessage]:
        """Return up to `limit` most recent messages."""
        ...

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        ...


class WebSocketChannel:
    """`RealtimeChannel` over a JSON websocket with automatic reconnection."""

    def __init__(
        self,
        url: str,
        name: str,
        *,
        session: ClientSession | None = None,
        max_backoff: float = CHANNEL_MAX_BACKOFF_SECONDS,
        history_timeout: float = 10.0,
    ) -> None:
        """Create a channel bound to `name` on the websocket server at `url`."""
        self._url = url
        self._name = name
        self._session = session
        self._owns_session = session is None
        self._max_backoff = max_backoff
        self._history_timeout = history_timeout
        self._ws: ClientWebSocketResponse | None = None
        self._state = ConnectionState.CONNECTING
        self._message_cbs: list[MessageCallback] = []
        self._state_cbs: list[StateCallback] = []
        self._pending_history: dict[str, asyncio.Future[list[ChatMessage]]] = {}
        self._connection_task: asyncio.Task[None] | None = None
        self._connected_event = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state

    @property
    def name(self) -> str:
        """Return the channel name."""
        return self._name

    async def connect(self) -> None:
        """Start the connection loop and wait for the first connection."""
        if self._connection_task is not None and not self._connection_task.done():
            logger.debug("Channel %s already connecting", self._name)
        else:
            self._closing = False
            self._connection_task = asyncio.get_running_loop().create_task(
                self._connection_loop()
            )
        waiter = asyncio.ensure_future(self._connected_event.wait())
        done, _ = await asyncio.wait(
            {waiter, self._connection_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter not in done:
            waiter.cancel()
            raise ConnectionError(f"Could not connect to channel {self._name}")

    def subscribe(self, callback: MessageCallback) -> Callable[[], None]:
        """Register a callback for inbound messages."""
        self._message_cbs.append(callback)
        return lambda: self._message_cbs.remove(callback)

    def add_state_listener(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback for connection state changes."""
        self._state_cbs.append(callback)
        return lambda: self._state_cbs.remove(callback)

    async def history(self, limit: int) -> list[ChatMessage]:
        """Request the most recent `limit` messages of the channel."""
        if self._ws is None or self._ws.closed:
            raise ConnectionError("Channel is not connected")
        request_id = uuid.uuid4().hex
        future: asyncio.Future[list[ChatMessage]] = asyncio.get_running_loop().create_future()
        self._pending_history[request_id] = future
        try:
            await self._send(HistoryRequestMessage(limit=limit, request_id=request_id))
            return await asyncio.wait_for(future, timeout=self._history_timeout)
        finally:
            self._pending_history.pop(request_id, None)

    async def close(self) -> None:
        """Disconnect and release resources."""
        self._closing = True
        if self._connection_task is not None:
            self._connection_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._connection_task
            self._connection_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        for task in list(self._tasks):
            task.cancel()
        self._fail_pending(ConnectionError("Channel closed"))
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _connection_loop(self) -> None:
        backoff = 1.0
        while not self._closing:
            try:
                if self._session is None:
                    self._session = ClientSession()
                self._set_state(ConnectionState.CONNECTING)
                self._ws = await self._session.ws_connect(self._url, heartbeat=30)
                await self._send(SubscribeMessage(channel=self._name))
                backoff = 1.0
                self._set_state(ConnectionState.CONNECTED)
                self._connected_event.set()
                await self._reader_loop()
            except asyncio.CancelledError:
                raise
            except (TimeoutError, ClientError, OSError) as err:
                logger.debug("Channel %s connection failed: %s", self._name, err)
            except Exception:
                logger.exception("Unexpected error on channel %s", self._name)
            finally:
                self._connected_event.clear()
                self._fail_pending(ConnectionError("Channel disconnected"))

            if self._closing:
                break
            if backoff > self._max_backoff:
                logger.warning("Giving up on channel %s", self._name)
                self._set_state(ConnectionState.FAILED)
                return
            self._set_state(ConnectionState.DISCONNECTED)
            logger.debug("Reconnecting to channel %s in %.1fs", self._name, backoff)
            await asyncio.sleep(backoff)
            backoff *= 2

    async def _reader_loop(self) -> None:
        if self._ws is None:
            raise RuntimeError("Channel is not connected")
        async for msg in self._ws:
            if not await self._handle_ws_message(msg):
                break

    async def _handle_ws_message(self, msg: WSMessage) -> bool:
        if msg.type is WSMsgType.TEXT:
            self._handle_json_message(msg.data)
            return True
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("Channel %s closed by server", self._name)
            return False
        if msg.type is WSMsgType.ERROR:
            logger.error(
                "Channel %s error: %s", self._name, self._ws.exception() if self._ws else "unknown"
            )
            return False
        logger.debug("Ignoring websocket frame of type %s", msg.type)
        return True

    def _handle_json_message(self, data: str) -> None:
        try:
            message = ChannelServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse channel message: %s", data)
            return

        match message:
            case ChatMessageFrame(data=chat_message):
                self._notify(self._message_cbs, chat_message)
            case HistoryResponseFrame(request_id=request_id, messages=messages):
                future = self._pending_history.get(request_id)
                if future is not None and not future.done():
                    future.set_result(messages)
            case _:
                logger.debug("Unhandled channel message type: %s", type(message).__name__)

    async def _send(self, message: SubscribeMessage | HistoryRequestMessage) -> None:
        if self._ws is None:
            raise ConnectionError("Channel is not connected")
        async with self._send_lock:
            await self._ws.send_str(message.to_json())

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("Channel %s is %s", self._name, state.value)
        self._state = state
        self._notify(self._state_cbs, state)

    def _notify(self, callbacks: list, payload: object) -> None:
        for callback in list(callbacks):
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Error in channel callback %s", callback)

    def _fail_pending(self, err: Exception) -> None:
        for future in self._pending_history.values():
            if not future.done():
                future.set_exception(err)
        self._pending_history.clear()
