"""Shared fixtures: fake media/channel/backends and an in-process webinar API."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from aiowebinar.errors import ChatSendError
from aiowebinar.models.chat import ChatMessage
from aiowebinar.models.interaction import InteractionDefinition
from aiowebinar.models.types import ConnectionState, InteractionType
from aiowebinar.player.media import (
    MediaEvent,
    MediaListener,
    MediaLoaded,
    MediaPause,
    MediaPlay,
    MediaSeeking,
    MediaTimeUpdate,
)

NOW = datetime(2026, 3, 1, 18, 0, tzinfo=UTC)


def make_definition(
    interaction_id: str,
    trigger_time: int,
    interaction_type: InteractionType = InteractionType.POLL,
    **kwargs: Any,
) -> InteractionDefinition:
    return InteractionDefinition(
        id=interaction_id, type=interaction_type, trigger_time=trigger_time, **kwargs
    )


def make_message(message_id: str, seconds: float = 0, *, simulated: bool = False) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        sender_name="Ada",
        message=f"message {message_id}",
        created_at=NOW + timedelta(seconds=seconds),
        is_simulated=simulated,
    )


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMedia:
    """Media element driven by the test, mimicking a browser video element."""

    def __init__(self, duration: float = 1800.0) -> None:
        self._duration = duration
        self._time = 0.0
        self._paused = True
        self.listener: MediaListener | None = None
        self.refuse_autoplay = False
        self.calls: list[str] = []
        self.seeks: list[float] = []

    @property
    def current_time(self) -> float:
        return self._time

    @current_time.setter
    def current_time(self, value: float) -> None:
        self.seeks.append(value)
        self._time = value
        self.emit(MediaSeeking(value))

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def paused(self) -> bool:
        return self._paused

    def set_event_listener(self, listener: MediaListener | None) -> None:
        self.listener = listener

    async def play(self) -> None:
        self.calls.append("play")
        if self.refuse_autoplay:
            raise RuntimeError("NotAllowedError")
        if self._paused:
            self._paused = False
            self.emit(MediaPlay())

    def pause(self) -> None:
        self.calls.append("pause")
        if not self._paused:
            self._paused = True
            self.emit(MediaPause())

    def start_load(self) -> None:
        self.calls.append("start_load")
        self.emit(MediaLoaded(self._duration))

    def recover_media_error(self) -> None:
        self.calls.append("recover_media_error")
        self.emit(MediaLoaded(self._duration))

    def destroy(self) -> None:
        self.calls.append("destroy")
        self.listener = None

    def emit(self, event: MediaEvent) -> None:
        if self.listener is not None:
            self.listener(event)

    def tick(self, current_time: float) -> None:
        """Advance playback as if time passed."""
        self._time = current_time
        self.emit(MediaTimeUpdate(current_time))


class FakeChannel:
    """In-memory real-time channel."""

    def __init__(self, history: list[ChatMessage] | None = None, *, fail: bool = False) -> None:
        self._history = history or []
        self._fail = fail
        self._state = ConnectionState.CONNECTING
        self._message_cbs: list[Callable[[ChatMessage], Any]] = []
        self._state_cbs: list[Callable[[ConnectionState], Any]] = []
        self.closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def connect(self) -> None:
        if self._fail:
            self.set_state(ConnectionState.FAILED)
            raise ConnectionError("unreachable")
        self.set_state(ConnectionState.CONNECTED)

    def subscribe(self, callback: Callable[[ChatMessage], Any]) -> Callable[[], None]:
        self._message_cbs.append(callback)
        return lambda: self._message_cbs.remove(callback)

    def add_state_listener(self, callback: Callable[[ConnectionState], Any]) -> Callable[[], None]:
        self._state_cbs.append(callback)
        return lambda: self._state_cbs.remove(callback)

    async def history(self, limit: int) -> list[ChatMessage]:
        return self._history[-limit:]

    async def close(self) -> None:
        self.closed = True
        self.set_state(ConnectionState.DISCONNECTED)

    def publish(self, message: ChatMessage) -> None:
        for callback in list(self._message_cbs):
            callback(message)

    def set_state(self, state: ConnectionState) -> None:
        self._state = state
        for callback in list(self._state_cbs):
            callback(state)


class FakeChatBackend:
    """Chat HTTP operations backed by a transcript list."""

    def __init__(self, transcript: dict[int, ChatMessage] | None = None) -> None:
        self.transcript = transcript or {}
        self.windows: list[tuple[int, int]] = []
        self.sent: list[str] = []
        self.fail_fetch = False
        self.fetch_error: Exception = TimeoutError()
        self.fail_send = False
        self.gate: asyncio.Event | None = None

    async def fetch_simulated_chat(self, from_second: int, to_second: int) -> list[ChatMessage]:
        self.windows.append((from_second, to_second))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_fetch:
            raise self.fetch_error
        return [m for second, m in sorted(self.transcript.items()) if from_second < second <= to_second]

    async def send_chat(self, message: str) -> None:
        if self.fail_send:
            raise ChatSendError("Failed to send message")
        self.sent.append(message)


async def drain() -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


# In-process webinar API


def access_payload(
    *,
    mode: str = "simulated_live",
    allow_seeking: bool = False,
    start_position: float = 0,
    last_position: float = 0,
    interactions: list[dict[str, Any]] | None = None,
    chat_enabled: bool = False,
    end_screen: dict[str, Any] | None = None,
    session_starts_at: datetime | None = None,
    duration: float = 1800,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "access": {
            "registrationId": "reg-1",
            "sessionType": "SCHEDULED" if mode == "simulated_live" else "REPLAY",
            "email": "ada@example.com",
            "firstName": "Ada",
        },
        "webinar": {
            "id": "web-1",
            "title": "Scaling Python",
            "hlsUrl": "https://cdn.example.com/web-1/master.m3u8",
            "duration": duration,
        },
        "playback": {
            "mode": mode,
            "allowSeeking": allow_seeking,
            "startPosition": start_position,
            "lastPosition": last_position,
        },
        "interactions": interactions or [],
        "chat": {"enabled": chat_enabled},
    }
    if end_screen is not None:
        payload["endScreen"] = end_screen
    if session_starts_at is not None:
        payload["sessionStartsAt"] = session_starts_at.isoformat()
    return payload


@dataclass
class WebinarBackend:
    """State and request log of the fake webinar API."""

    access: dict[str, Any] = field(default_factory=access_payload)
    access_status: int = 200
    access_responses: list[tuple[int, dict[str, Any]]] = field(default_factory=list)
    results: dict[str, Any] | None = None
    results_status: int = 200
    simulated: list[dict[str, Any]] = field(default_factory=list)
    fail_respond: bool = False
    fail_chat: bool = False
    requests: list[tuple[str, str, Any]] = field(default_factory=list)

    def posted(self, path: str) -> list[dict[str, Any]]:
        return [body for method, p, body in self.requests if method == "POST" and p == path]

    def build_app(self) -> web.Application:
        app = web.Application()
        prefix = "/api/webinars/{slug}"
        app.router.add_get(f"{prefix}/access", self._get_access)
        app.router.add_post(f"{prefix}/access", self._record_post)
        app.router.add_post(f"{prefix}/analytics", self._record_post)
        app.router.add_post(f"{prefix}/interactions/respond", self._respond)
        app.router.add_get(f"{prefix}/interactions/{{interaction_id}}/results", self._results)
        app.router.add_get(f"{prefix}/chat/simulated", self._simulated)
        app.router.add_post(f"{prefix}/chat", self._chat)
        return app

    def _path(self, request: web.Request) -> str:
        return request.path.split(f"/api/webinars/{request.match_info['slug']}/", 1)[1]

    async def _get_access(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", "access", dict(request.query)))
        if self.access_responses:
            status, body = self.access_responses.pop(0)
            return web.json_response(body, status=status)
        return web.json_response(self.access, status=self.access_status)

    async def _record_post(self, request: web.Request) -> web.Response:
        self.requests.append(("POST", self._path(request), await request.json()))
        return web.json_response({"success": True})

    async def _respond(self, request: web.Request) -> web.Response:
        self.requests.append(("POST", "interactions/respond", await request.json()))
        if self.fail_respond:
            return web.json_response({"error": "boom"}, status=500)
        return web.json_response({"success": True})

    async def _results(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", self._path(request), dict(request.query)))
        if self.results_status != 200:
            return web.json_response({"error": "boom"}, status=self.results_status)
        return web.json_response({"results": self.results})

    async def _simulated(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", "chat/simulated", dict(request.query)))
        low, high = int(request.query["from"]), int(request.query["to"])
        messages = [m for m in self.simulated if low < m["appearsAt"] <= high]
        return web.json_response(
            {"messages": [{k: v for k, v in m.items() if k != "appearsAt"} for m in messages]}
        )

    async def _chat(self, request: web.Request) -> web.Response:
        self.requests.append(("POST", "chat", await request.json()))
        if self.fail_chat:
            return web.json_response({"error": "boom"}, status=500)
        return web.json_response({"success": True})


@pytest.fixture
def backend() -> WebinarBackend:
    return WebinarBackend()


@pytest_asyncio.fixture
async def server(backend: WebinarBackend) -> AsyncIterator[TestServer]:
    test_server = TestServer(backend.build_app())
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
def base_url(server: TestServer) -> str:
    return str(server.make_url("")).rstrip("/")
