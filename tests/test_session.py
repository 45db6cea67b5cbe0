"""End-to-end tests of a watch session against the in-process webinar API."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio

from aiowebinar.api import WebinarApiClient
from aiowebinar.config import EngineConfig
from aiowebinar.errors import (
    AccessDeniedError,
    ChatSendError,
    InteractionSubmitError,
    SessionEndedError,
)
from aiowebinar.feed import ChatFeedItem, InteractionFeedItem
from aiowebinar.models.types import (
    ConnectionState,
    FeedFilter,
    InteractionStatus,
    UnloadSignal,
)
from aiowebinar.player.media import MediaEnded
from aiowebinar.session import (
    EndScreenShownEvent,
    FeedUpdatedEvent,
    ResultsUpdatedEvent,
    WatchSession,
)
from aiowebinar.timeline import InteractionActivatedEvent, InteractionClosedEvent
from tests.conftest import (
    NOW,
    FakeChannel,
    FakeClock,
    FakeMedia,
    WebinarBackend,
    access_payload,
    drain,
    make_message,
)

POLL = {
    "id": "poll-1",
    "type": "POLL",
    "triggerTime": 60,
    "title": "Which framework do you use?",
    "config": {"options": ["aiohttp", "FastAPI"]},
}
RESULTS = {
    "options": [
        {"option": "aiohttp", "index": 0, "count": 2, "percentage": 67},
        {"option": "FastAPI", "index": 1, "count": 1, "percentage": 33},
    ],
    "totalResponses": 3,
    "userResponse": [1],
    "hasResponded": True,
}


async def settle(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until `predicate` holds, giving HTTP round trips time to finish."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _event_types(backend: WebinarBackend, path: str) -> list[str]:
    return [body["eventType"] for body in backend.posted(path)]


@pytest_asyncio.fixture
async def api(base_url: str) -> AsyncIterator[WebinarApiClient]:
    async with WebinarApiClient(base_url, "scaling-python", "tok") as client:
        yield client


class Harness:
    def __init__(self, api: WebinarApiClient) -> None:
        self.api = api
        self.clock = FakeClock()
        self.media = FakeMedia(duration=1800)
        self.channel: FakeChannel | None = None
        self.events: list[Any] = []

    def session(self) -> WatchSession:
        session = WatchSession(
            self.api,
            self.media,
            channel_factory=lambda access: self.channel,
            config=EngineConfig(autoplay_delay=0, poll_results_interval=0.05),
            clock=self.clock,
        )
        session.add_event_listener(self.events.append)
        return session

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def harness(api: WebinarApiClient) -> Harness:
    return Harness(api)


@pytest.mark.asyncio
async def test_poll_lifecycle_and_feed(backend: WebinarBackend, harness: Harness) -> None:
    backend.access = access_payload(interactions=[POLL])
    backend.results = RESULTS
    session = harness.session()
    await session.open()
    await drain()
    assert session.controller.is_playing

    harness.media.tick(59)
    assert session.active == []
    harness.media.tick(60)
    assert [d.id for d in session.active] == ["poll-1"]
    assert harness.of_type(InteractionActivatedEvent)

    harness.media.tick(75)
    assert await session.respond("poll-1", {"selectedOptions": [1], "type": "POLL"})
    assert session.scheduler.status("poll-1") is InteractionStatus.ANSWERED
    assert session.active == []
    aggregator = session.results_for("poll-1")
    assert aggregator is not None
    await settle(lambda: aggregator.results is not None)
    assert aggregator.results.total_responses == 3
    assert harness.of_type(ResultsUpdatedEvent)

    harness.media.tick(200)
    [triggered] = session.triggered
    assert triggered.status is InteractionStatus.ANSWERED
    assert triggered.answer is not None
    assert triggered.answer.user_response == {"selectedOptions": [1], "type": "POLL"}
    [item] = session.feed()
    assert isinstance(item, InteractionFeedItem)
    assert item.timestamp == NOW + timedelta(seconds=60)
    assert session.feed(FeedFilter.CHAT_ONLY) == []

    await settle(lambda: len(backend.posted("interactions/respond")) == 2)
    assert sorted(_event_types(backend, "interactions/respond")) == ["RESPONDED", "VIEWED"]
    await session.close()


@pytest.mark.asyncio
async def test_expired_interaction_can_still_be_answered(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(interactions=[POLL])
    session = harness.session()
    await session.open()
    harness.media.tick(60)
    harness.media.tick(95)
    assert session.scheduler.status("poll-1") is InteractionStatus.EXPIRED
    assert len(harness.of_type(InteractionClosedEvent)) == 1
    assert await session.respond("poll-1", {"selectedOptions": [0], "type": "POLL"})
    assert await session.respond("poll-1", {"selectedOptions": [1], "type": "POLL"}) is False
    with pytest.raises(KeyError):
        await session.respond("nope", {})
    await session.close()


@pytest.mark.asyncio
async def test_failed_submission_leaves_interaction_open(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(interactions=[POLL])
    session = harness.session()
    await session.open()
    harness.media.tick(60)
    backend.fail_respond = True
    with pytest.raises(InteractionSubmitError):
        await session.respond("poll-1", {"selectedOptions": [0]})
    assert session.scheduler.status("poll-1") is InteractionStatus.ACTIVE
    await session.close()


@pytest.mark.asyncio
async def test_pause_video_interaction_auto_resumes(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(
        interactions=[
            {
                "id": "break",
                "type": "PAUSE",
                "triggerTime": 10,
                "pauseVideo": True,
                "config": {"autoResumeDuration": 0.05},
            }
        ]
    )
    session = harness.session()
    await session.open()
    await drain()
    assert not harness.media.paused

    harness.media.tick(10)
    assert harness.media.paused
    assert session.controller.paused_for_interaction
    assert session.controller.toggle_play_pause() is False

    await settle(lambda: session.scheduler.status("break") is InteractionStatus.DISMISSED)
    await settle(lambda: not harness.media.paused)
    assert not session.controller.paused_for_interaction
    await settle(lambda: "DISMISSED" in _event_types(backend, "interactions/respond"))
    await session.close()


@pytest.mark.asyncio
async def test_dismiss_releases_pause(backend: WebinarBackend, harness: Harness) -> None:
    backend.access = access_payload(
        interactions=[{"id": "break", "type": "PAUSE", "triggerTime": 10, "pauseVideo": True}]
    )
    session = harness.session()
    await session.open()
    await drain()
    harness.media.tick(10)
    assert harness.media.paused
    assert await session.dismiss("break")
    assert await session.dismiss("break") is False
    await drain()
    assert not harness.media.paused
    await session.close()


@pytest.mark.asyncio
async def test_replay_restores_earlier_answer(backend: WebinarBackend, harness: Harness) -> None:
    backend.access = access_payload(
        mode="replay", allow_seeking=True, interactions=[{**POLL, "triggerTime": 5}]
    )
    backend.results = RESULTS
    session = harness.session()
    await session.open()
    assert session.playback.session_start_wall_clock is None
    harness.media.tick(5)
    await settle(lambda: session.scheduler.status("poll-1") is InteractionStatus.ANSWERED)
    [triggered] = session.triggered
    assert triggered.answer is not None
    assert triggered.answer.user_response == {"selectedOptions": [1]}
    aggregator = session.results_for("poll-1")
    assert aggregator is not None
    assert aggregator.should_show_results
    await session.close()


@pytest.mark.asyncio
async def test_poll_answered_after_its_window_gets_results(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(interactions=[POLL])
    backend.results = RESULTS
    session = harness.session()
    await session.open()
    harness.media.tick(100)
    assert session.scheduler.status("poll-1") is InteractionStatus.EXPIRED
    assert harness.of_type(InteractionActivatedEvent) == []
    assert session.results_for("poll-1") is None

    assert await session.respond("poll-1", {"selectedOptions": [1], "type": "POLL"})
    aggregator = session.results_for("poll-1")
    assert aggregator is not None
    assert aggregator.should_show_results
    await settle(lambda: aggregator.results is not None)
    assert aggregator.results.total_responses == 3
    assert _event_types(backend, "interactions/respond") == ["RESPONDED"]
    await session.close()


@pytest.mark.asyncio
async def test_replay_seek_past_poll_restores_earlier_answer(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(
        mode="replay", allow_seeking=True, interactions=[{**POLL, "triggerTime": 5}]
    )
    backend.results = RESULTS
    session = harness.session()
    await session.open()
    harness.media.tick(100)
    assert harness.of_type(InteractionActivatedEvent) == []
    await settle(lambda: session.scheduler.status("poll-1") is InteractionStatus.ANSWERED)
    aggregator = session.results_for("poll-1")
    assert aggregator is not None
    assert aggregator.should_show_results
    await session.close()


@pytest.mark.asyncio
async def test_chat_merges_history_transcript_and_interactions(
    backend: WebinarBackend, harness: Harness
) -> None:
    backend.access = access_payload(interactions=[{**POLL, "triggerTime": 4}], chat_enabled=True)
    backend.simulated = [
        {
            "id": "s1",
            "senderName": "Grace",
            "message": "Recorded hello",
            "createdAt": (NOW + timedelta(seconds=3)).isoformat(),
            "isSimulated": True,
            "appearsAt": 3,
        }
    ]
    harness.channel = FakeChannel(history=[make_message("h1", seconds=-30)])
    session = harness.session()
    await session.open()
    assert session.live_feed is not None
    await settle(lambda: session.live_feed.connection_state is ConnectionState.CONNECTED)
    await settle(lambda: bool(session.live_feed.messages))

    harness.media.tick(5)
    await settle(lambda: len(session.live_feed.messages) == 2)
    harness.channel.publish(make_message("live-1", seconds=10))
    harness.channel.publish(make_message("live-1", seconds=10))

    kinds = [(item.kind, item.data.id) for item in session.feed()]
    assert kinds == [
        ("chat", "h1"),
        ("chat", "s1"),
        ("interaction", "poll-1"),
        ("chat", "live-1"),
    ]
    assert all(isinstance(i, ChatFeedItem) for i in session.feed(FeedFilter.CHAT_ONLY))
    assert harness.of_type(FeedUpdatedEvent)

    await session.send_chat("  great talk  ")
    assert backend.posted("chat") == [{"token": "tok", "message": "great talk"}]
    await session.close()
    assert harness.channel.closed


@pytest.mark.asyncio
async def test_chat_disabled(backend: WebinarBackend, harness: Harness) -> None:
    session = harness.session()
    await session.open()
    assert session.live_feed is None
    with pytest.raises(ChatSendError):
        await session.send_chat("hello?")
    await session.close()


@pytest.mark.asyncio
async def test_completion_shows_end_screen(backend: WebinarBackend, harness: Harness) -> None:
    backend.access = access_payload(
        end_screen={"enabled": True, "buttonText": "Get the slides", "buttonUrl": "https://x.test"}
    )
    session = harness.session()
    await session.open()
    harness.media.emit(MediaEnded())
    [shown] = harness.of_type(EndScreenShownEvent)
    assert shown.end_screen is session.end_screen
    assert session.end_screen is not None and session.end_screen.shown

    await settle(lambda: "END_SCREEN_VIEWED" in _event_types(backend, "analytics"))
    await settle(lambda: "VIDEO_COMPLETED" in _event_types(backend, "access"))
    [completed] = [b for b in backend.posted("access") if b["eventType"] == "VIDEO_COMPLETED"]
    assert completed["progress"] == 100
    assert completed["completed"] is True
    await session.close()


@pytest.mark.asyncio
async def test_unload_reports_once(backend: WebinarBackend, harness: Harness) -> None:
    session = harness.session()
    await session.open()
    harness.clock.advance(95)
    harness.media.tick(95)
    await session.unload(UnloadSignal.BEFORE_UNLOAD)
    await session.unload(UnloadSignal.PAGE_HIDDEN)
    await session.close()

    analytics = _event_types(backend, "analytics")
    assert analytics.count("LEFT_EARLY") == 1
    [left] = [b for b in backend.posted("analytics") if b["eventType"] == "LEFT_EARLY"]
    assert left["metadata"]["sessionDurationSeconds"] == 95
    assert left["metadata"]["currentVideoPosition"] == 95
    finals = [b for b in backend.posted("access") if b["eventType"] == "VIDEO_FINAL"]
    assert len(finals) == 1
    assert finals[0]["sessionDurationSeconds"] == 95
    assert "destroy" in harness.media.calls
    assert session.closed


@pytest.mark.asyncio
async def test_attendance_tracked_on_open(backend: WebinarBackend, harness: Harness) -> None:
    session = harness.session()
    await session.open()
    await settle(lambda: "ATTENDANCE" in _event_types(backend, "analytics"))
    [attendance] = backend.posted("analytics")
    assert attendance["metadata"]["playbackMode"] == "simulated_live"
    await session.close()


@pytest.mark.asyncio
async def test_waiting_room_refetches_access(backend: WebinarBackend, harness: Harness) -> None:
    starts_at = NOW + timedelta(minutes=5)
    backend.access_responses = [
        (403, {"error": "Not started", "waitingRoom": True, "startsAt": starts_at.isoformat()}),
        (200, access_payload(session_starts_at=starts_at)),
    ]
    session = harness.session()
    access = await session.open()
    assert access.session_starts_at == starts_at
    assert len([r for r in backend.requests if r[:2] == ("GET", "access")]) == 2
    assert session.gate.admitted
    await session.close()


@pytest.mark.asyncio
async def test_still_waiting_after_refetch_is_denied(
    backend: WebinarBackend, harness: Harness
) -> None:
    waiting = {"error": "Not started", "waitingRoom": True, "startsAt": NOW.isoformat()}
    backend.access_responses = [(403, waiting), (403, waiting)]
    session = harness.session()
    with pytest.raises(AccessDeniedError):
        await session.open()


@pytest.mark.asyncio
async def test_access_error_propagates(backend: WebinarBackend, harness: Harness) -> None:
    backend.access_status = 403
    backend.access = {"error": "Session over", "sessionEnded": True}
    session = harness.session()
    with pytest.raises(SessionEndedError):
        await session.open()
    assert harness.media.calls == []
