"""Watch session: one viewer watching one webinar.

`WatchSession` owns every per-viewer object of a page load and wires them
together. Playback time updates flow from the controller to the interaction
scheduler, the heartbeat reporter and the chat feed; interaction activations
drive view tracking, video pausing and result polling; completion shows the
end screen.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from types import TracebackType
from typing import Any, Self

from aiohttp import ClientError

from aiowebinar.api import WebinarApiClient
from aiowebinar.channel import RealtimeChannel
from aiowebinar.config import EngineConfig
from aiowebinar.end_screen import EndScreen
from aiowebinar.errors import AccessDeniedError, ChatSendError, InteractionSubmitError
from aiowebinar.feed import FeedItem, FeedState, LiveFeed, build_feed
from aiowebinar.gate import SessionGate
from aiowebinar.models.access import AccessGranted, WaitingRoom
from aiowebinar.models.interaction import InteractionDefinition, PollResults
from aiowebinar.models.types import (
    FeedFilter,
    InteractionEventType,
    InteractionStatus,
    PlaybackMode,
    UnloadSignal,
)
from aiowebinar.player.controller import (
    PlaybackController,
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackEvent,
    PlaybackSession,
    PlaybackStartedEvent,
    TimeUpdateEvent,
)
from aiowebinar.player.heartbeat import HeartbeatReporter
from aiowebinar.player.media import MediaElement
from aiowebinar.results import PollResultAggregator
from aiowebinar.timeline import (
    InteractionActivatedEvent,
    InteractionClosedEvent,
    InteractionScheduler,
    SchedulerEvent,
    TriggeredInteraction,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[AccessGranted], RealtimeChannel | None]
MediaFactory = Callable[[AccessGranted], MediaElement]


@dataclass
class ResultsUpdatedEvent:
    """New aggregate results arrived for a poll or quiz."""

    interaction_id: str
    results: PollResults | None


@dataclass
class FeedUpdatedEvent:
    """The chat side of the feed changed."""

    state: FeedState


@dataclass
class EndScreenShownEvent:
    """The video completed and the end screen is displayed."""

    end_screen: EndScreen


@dataclass
class RedirectEvent:
    """The end screen sends the viewer to another page."""

    url: str


SessionEvent = (
    SchedulerEvent
    | PlaybackEvent
    | ResultsUpdatedEvent
    | FeedUpdatedEvent
    | EndScreenShownEvent
    | RedirectEvent
)
SessionCallback = Callable[[SessionEvent], Awaitable[None] | None]


class WatchSession:
    """A viewer watching a webinar, from access check to teardown."""

    def __init__(
        self,
        api: WebinarApiClient,
        media: MediaElement | None = None,
        *,
        media_factory: MediaFactory | None = None,
        channel_factory: ChannelFactory | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Create a session; nothing happens until `open()`.

        Pass either a ready `media` element or a `media_factory` building one
        from the access payload.
        """
        if media is None and media_factory is None:
            raise ValueError("media or media_factory is required")
        self._api = api
        self._media = media
        self._media_factory = media_factory
        self._channel_factory = channel_factory
        self._config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rng = rng or random.Random()

        self._access: AccessGranted | None = None
        self._playback: PlaybackSession | None = None
        self._gate: SessionGate | None = None
        self._controller: PlaybackController | None = None
        self._scheduler: InteractionScheduler | None = None
        self._heartbeat: HeartbeatReporter | None = None
        self._feed: LiveFeed | None = None
        self._end_screen: EndScreen | None = None
        self._results: dict[str, PollResultAggregator] = {}
        self._pausing: set[str] = set()
        self._auto_resume: dict[str, asyncio.Task[None]] = {}

        self._event_cbs: list[SessionCallback] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unloaded = False
        self._closed = False

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def access(self) -> AccessGranted:
        """Return the access payload of the session."""
        if self._access is None:
            raise RuntimeError("Session is not open")
        return self._access

    @property
    def playback(self) -> PlaybackSession:
        """Return the playback parameters."""
        if self._playback is None:
            raise RuntimeError("Session is not open")
        return self._playback

    @property
    def gate(self) -> SessionGate:
        """Return the session gate."""
        if self._gate is None:
            raise RuntimeError("Session is not open")
        return self._gate

    @property
    def controller(self) -> PlaybackController:
        """Return the playback controller."""
        if self._controller is None:
            raise RuntimeError("Session is not open")
        return self._controller

    @property
    def scheduler(self) -> InteractionScheduler:
        """Return the interaction scheduler."""
        if self._scheduler is None:
            raise RuntimeError("Session is not open")
        return self._scheduler

    @property
    def heartbeat(self) -> HeartbeatReporter:
        """Return the heartbeat reporter."""
        if self._heartbeat is None:
            raise RuntimeError("Session is not open")
        return self._heartbeat

    @property
    def live_feed(self) -> LiveFeed | None:
        """Return the chat feed, None when chat is disabled."""
        return self._feed

    @property
    def end_screen(self) -> EndScreen | None:
        """Return the end screen once shown."""
        return self._end_screen

    @property
    def active(self) -> list[InteractionDefinition]:
        """Return the interactions to display right now."""
        return self.scheduler.active

    @property
    def triggered(self) -> list[TriggeredInteraction]:
        """Return every interaction reached so far."""
        return self.scheduler.triggered

    @property
    def closed(self) -> bool:
        """Return True once the session was closed."""
        return self._closed

    def results_for(self, interaction_id: str) -> PollResultAggregator | None:
        """Return the result aggregator of a poll or quiz."""
        return self._results.get(interaction_id)

    def add_event_listener(self, callback: SessionCallback) -> Callable[[], None]:
        """Register a callback for everything the viewer should see.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    async def open(self) -> AccessGranted:
        """Load access, wait for the session to open and start playback."""
        access = await self._load_access()
        now = self._clock()
        self._access = access
        self._playback = playback = PlaybackSession.from_access(access, now)
        token = self._api.token
        logger.info(
            "Opening %s (%s, start at %.1fs)",
            access.webinar.title,
            playback.playback_mode.value,
            playback.start_position,
        )

        self._gate = SessionGate(
            token=token,
            track=self._api.track_event,
            beacon=partial(self._api.send_beacon, "analytics"),
            session_start=playback.session_start_wall_clock,
            early_access_minutes=self._config.early_access_minutes,
            clock=self._clock,
        )
        await self._gate.wait_until_admitted()
        self._gate.track_joined(playback.playback_mode, playback.session_type)

        self._scheduler = InteractionScheduler(
            access.interactions,
            default_duration=self._config.interaction_default_duration,
            clock=self._clock,
        )
        self._scheduler.add_event_listener(self._on_scheduler_event)

        self._heartbeat = HeartbeatReporter(
            self._api.report_progress,
            partial(self._api.send_beacon, "access"),
            token=token,
            base_interval=self._config.progress_interval,
            jitter_max=self._config.progress_jitter_max,
            rng=self._rng,
            start_position=playback.start_position,
        )

        if access.chat.enabled:
            channel = self._channel_factory(access) if self._channel_factory else None
            self._feed = LiveFeed(
                channel,
                self._api,
                simulated=playback.is_simulated_live,
                history_limit=self._config.chat_history_limit,
            )
            self._feed.add_listener(self._on_feed_state)
            self._create_task(self._feed.start())

        if self._media is None:
            if self._media_factory is None:
                raise RuntimeError("No media element to play")
            self._media = self._media_factory(access)
        self._controller = PlaybackController(
            self._media,
            playback,
            duration_hint=access.webinar.duration,
            autoplay_delay=self._config.autoplay_delay,
            max_recovery_attempts=self._config.max_recovery_attempts,
            clock=self._clock,
        )
        self._controller.add_event_listener(self._on_playback_event)
        self._controller.attach()
        self._media.start_load()
        return access

    async def dismiss(self, interaction_id: str) -> bool:
        """Close an active interaction without responding."""
        if not self.scheduler.dismiss(interaction_id):
            return False
        await self._submit_quietly(interaction_id, {}, InteractionEventType.DISMISSED)
        return True

    async def respond(
        self,
        interaction_id: str,
        response: Mapping[str, Any],
        event_type: InteractionEventType = InteractionEventType.RESPONDED,
    ) -> bool:
        """Submit the viewer's response to a triggered interaction.

        The response is recorded only once the server accepted it; raises
        `InteractionSubmitError` otherwise. Returns False when the interaction
        cannot be answered (not reached yet, dismissed or answered).
        """
        scheduler = self.scheduler
        definition = scheduler.definition(interaction_id)
        if definition is None:
            raise KeyError(interaction_id)
        if scheduler.status(interaction_id) not in (
            InteractionStatus.ACTIVE,
            InteractionStatus.EXPIRED,
        ):
            logger.debug("Interaction %s cannot be answered", interaction_id)
            return False
        await self._api.submit_interaction(interaction_id, dict(response), event_type)
        if not scheduler.mark_answered(interaction_id, response):
            return False
        if (aggregator := self._ensure_results(definition)) is not None:
            aggregator.set_answered()
        return True

    async def send_chat(self, text: str) -> None:
        """Post a chat message."""
        if self._feed is None:
            raise ChatSendError("Chat is disabled for this webinar")
        await self._feed.send(text)

    def feed(self, feed_filter: FeedFilter = FeedFilter.ALL) -> list[FeedItem]:
        """Return chat and triggered interactions as one ordered list."""
        anchor = self.playback.anchor()
        if self._feed is None:
            return build_feed((), self.triggered, anchor, feed_filter)
        return self._feed.items(self.triggered, anchor, feed_filter)

    async def unload(self, signal: UnloadSignal = UnloadSignal.CLOSED) -> None:
        """Send the exit analytics and final progress, once."""
        if self._unloaded or self._controller is None:
            return
        self._unloaded = True
        controller = self._controller
        position = controller.current_time
        progress = controller.progress
        completed = controller.has_ended
        await self.gate.exit(signal, position=position, progress=progress, completed=completed)
        joined_at = self.gate.joined_at or self.playback.loaded_at
        session_duration = int((self._clock() - joined_at).total_seconds())
        await self.heartbeat.send_final(position, progress, completed, session_duration)

    async def close(self) -> None:
        """Tear the session down; pending work is cancelled."""
        if self._closed:
            return
        if self._controller is not None and not self._unloaded:
            await self.unload(UnloadSignal.CLOSED)
        self._closed = True
        for task in self._auto_resume.values():
            task.cancel()
        self._auto_resume.clear()
        for aggregator in self._results.values():
            await aggregator.close()
        if self._end_screen is not None:
            await self._end_screen.close()
        if self._feed is not None:
            await self._feed.close()
        if self._heartbeat is not None:
            await self._heartbeat.close()
        if self._controller is not None:
            await self._controller.close()
            if self._media is not None:
                self._media.destroy()
        if self._gate is not None:
            await self._gate.close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.info("Watch session closed")

    async def __aenter__(self) -> Self:
        """Open the session when entering the async context manager."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the session when leaving the async context manager."""
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _load_access(self) -> AccessGranted:
        result = await self._api.get_access()
        if isinstance(result, AccessGranted):
            return result
        gate = SessionGate(
            token=self._api.token,
            track=self._api.track_event,
            beacon=partial(self._api.send_beacon, "analytics"),
            session_start=result.starts_at,
            early_access_minutes=self._config.early_access_minutes,
            clock=self._clock,
        )
        logger.info(
            "Waiting room, session starts in %.0fs", gate.seconds_until_start(self._clock())
        )
        await gate.wait_until_admitted()
        result = await self._api.get_access()
        if isinstance(result, WaitingRoom):
            raise AccessDeniedError("The session has not opened yet")
        return result

    def _on_playback_event(self, event: PlaybackEvent) -> None:
        if self._closed:
            return
        match event:
            case TimeUpdateEvent(current_time=current_time, duration=duration):
                self.scheduler.advance(current_time)
                if self.playback.playback_mode is PlaybackMode.REPLAY:
                    for triggered in self.scheduler.triggered:
                        self._ensure_results(triggered.definition)
                self.heartbeat.on_time_update(current_time, duration)
                if self._feed is not None:
                    self._feed.on_time_update(current_time)
            case PlaybackStartedEvent():
                logger.debug("Playback started")
            case PlaybackEndedEvent():
                self._on_ended()
            case PlaybackErrorEvent(message=message):
                logger.error("Playback stopped: %s", message)
        self._signal_event(event)

    def _on_ended(self) -> None:
        controller = self.controller
        self.heartbeat.report_completed(controller.duration or controller.current_time)
        end_screen_config = self.access.end_screen
        if end_screen_config is None or not end_screen_config.enabled:
            return
        self._end_screen = EndScreen(
            end_screen_config,
            token=self._api.token,
            track=self._api.track_event,
            on_redirect=self._on_redirect,
        )
        self._end_screen.show()
        self._signal_event(EndScreenShownEvent(self._end_screen))

    def _on_redirect(self, url: str) -> None:
        self._signal_event(RedirectEvent(url))

    def _on_scheduler_event(self, event: SchedulerEvent) -> None:
        if self._closed:
            return
        match event:
            case InteractionActivatedEvent(interaction=definition):
                self._on_activated(definition)
            case InteractionClosedEvent(interaction=definition):
                self._release_pause(definition.id)
        self._signal_event(event)

    def _on_activated(self, definition: InteractionDefinition) -> None:
        self._create_task(
            self._submit_quietly(definition.id, {}, InteractionEventType.VIEWED)
        )
        if definition.pause_video:
            self._pausing.add(definition.id)
            self.controller.set_paused_for_interaction(True)
            auto_resume = definition.config.get("autoResumeDuration")
            if isinstance(auto_resume, int | float) and auto_resume > 0:
                self._auto_resume[definition.id] = self._create_task(
                    self._auto_dismiss(definition.id, float(auto_resume))
                )
        self._ensure_results(definition)

    def _ensure_results(self, definition: InteractionDefinition) -> PollResultAggregator | None:
        """Return the results aggregator of a poll or quiz, creating it once."""
        if not definition.type.shows_results or self._closed:
            return None
        if (aggregator := self._results.get(definition.id)) is not None:
            return aggregator
        aggregator = PollResultAggregator(
            self._api.fetch_results,
            definition.id,
            interval=self._config.poll_results_interval,
        )
        aggregator.add_listener(self._on_results)
        self._results[definition.id] = aggregator
        if self.playback.playback_mode is PlaybackMode.REPLAY:
            self._create_task(self._restore_answer(aggregator))
        return aggregator

    def _release_pause(self, interaction_id: str) -> None:
        if (task := self._auto_resume.pop(interaction_id, None)) is not None:
            if task is not asyncio.current_task():
                task.cancel()
        if interaction_id not in self._pausing:
            return
        self._pausing.discard(interaction_id)
        if not self._pausing:
            self.controller.set_paused_for_interaction(False)

    async def _auto_dismiss(self, interaction_id: str, delay: float) -> None:
        with suppress(asyncio.CancelledError):
            await asyncio.sleep(delay)
            logger.debug("Auto resuming after interaction %s", interaction_id)
            await self.dismiss(interaction_id)

    async def _restore_answer(self, aggregator: PollResultAggregator) -> None:
        """Show results of interactions answered in an earlier visit."""
        interaction_id = aggregator.interaction_id
        try:
            results = await self._api.fetch_results(interaction_id)
        except (ClientError, TimeoutError, ValueError, LookupError) as err:
            logger.debug("Could not check prior answer of %s: %s", interaction_id, err)
            return
        if self._closed or results is None or not results.has_responded:
            return
        response = {"selectedOptions": results.user_response or []}
        self.scheduler.mark_answered(interaction_id, response)
        aggregator.set_force_show()

    def _on_results(self, aggregator: PollResultAggregator) -> None:
        self._signal_event(ResultsUpdatedEvent(aggregator.interaction_id, aggregator.results))

    def _on_feed_state(self, state: FeedState) -> None:
        self._signal_event(FeedUpdatedEvent(state))

    async def _submit_quietly(
        self, interaction_id: str, response: dict[str, Any], event_type: InteractionEventType
    ) -> None:
        try:
            await self._api.submit_interaction(interaction_id, response, event_type)
        except InteractionSubmitError as err:
            logger.warning("%s", err)

    def _create_task(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _signal_event(self, event: SessionEvent) -> None:
        for callback in list(self._event_cbs):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    self._create_task(result)
            except Exception:
                logger.exception("Error in session callback %s", callback)
