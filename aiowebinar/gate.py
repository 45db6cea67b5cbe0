"""Session gate: waiting room admission and join/exit analytics."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from aiohttp import ClientError

from aiowebinar.config import EARLY_ACCESS_MINUTES
from aiowebinar.models.reports import AnalyticsEvent
from aiowebinar.models.types import AnalyticsEventType, PlaybackMode, SessionType, UnloadSignal

logger = logging.getLogger(__name__)

EventSender = Callable[[AnalyticsEvent], Awaitable[None]]
BeaconSender = Callable[[AnalyticsEvent], Awaitable[bool]]


class GateState(Enum):
    """Admission state of a viewer."""

    WAITING = "waiting"
    ADMITTED = "admitted"


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


class SessionGate:
    """Admits a viewer once the session opens and reports join and exit.

    Viewers are let in `early_access_minutes` before the scheduled start.
    Admission is irreversible. The joined and left analytics events are each
    sent at most once per gate.
    """

    def __init__(
        self,
        *,
        token: str,
        track: EventSender,
        beacon: BeaconSender,
        session_start: datetime | None = None,
        early_access_minutes: float = EARLY_ACCESS_MINUTES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a gate for a session starting at `session_start`.

        Without a start time (on demand, replay) the gate admits immediately.
        """
        self._token = token
        self._track = track
        self._beacon = beacon
        self._session_start = session_start
        self._early_access = timedelta(minutes=early_access_minutes)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = GateState.WAITING
        self._joined_at: datetime | None = None
        self._join_tracked = False
        self._exit_tracked = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> GateState:
        """Return the admission state."""
        return self._state

    @property
    def admitted(self) -> bool:
        """Return True once the viewer was let in."""
        return self._state is GateState.ADMITTED

    @property
    def joined_at(self) -> datetime | None:
        """Return when the viewer was admitted."""
        return self._joined_at

    @property
    def opens_at(self) -> datetime | None:
        """Return the instant admission becomes possible."""
        if self._session_start is None:
            return None
        return self._session_start - self._early_access

    def seconds_until_start(self, now: datetime | None = None) -> float:
        """Return the seconds left until the scheduled start, for a countdown."""
        if self._session_start is None:
            return 0.0
        now = now or self._clock()
        return max(0.0, (self._session_start - now).total_seconds())

    def evaluate(self, now: datetime | None = None) -> GateState:
        """Admit the viewer if the session is open at `now`."""
        if self._state is GateState.ADMITTED:
            return self._state
        now = now or self._clock()
        opens_at = self.opens_at
        if opens_at is None or now >= opens_at:
            self._state = GateState.ADMITTED
            self._joined_at = now
            logger.info("Viewer admitted at %s", _iso(now))
        return self._state

    async def wait_until_admitted(self) -> None:
        """Sleep until the session opens, then admit."""
        while self.evaluate() is GateState.WAITING:
            opens_at = self.opens_at
            if opens_at is None:
                raise RuntimeError("Waiting room without a session start")
            delay = (opens_at - self._clock()).total_seconds()
            logger.debug("Waiting room, opening in %.0fs", delay)
            await asyncio.sleep(max(delay, 0.05))

    def track_joined(self, playback_mode: PlaybackMode, session_type: SessionType) -> bool:
        """Send the joined event once the viewer is admitted.

        Returns False when the viewer is still waiting or the event was
        already sent.
        """
        if not self.admitted or self._join_tracked:
            return False
        self._join_tracked = True
        if self._joined_at is None:
            raise RuntimeError("Admitted viewer without a join time")
        event = AnalyticsEvent(
            token=self._token,
            event_type=AnalyticsEventType.ATTENDANCE,
            metadata={
                "joinTime": _iso(self._joined_at),
                "playbackMode": playback_mode.value,
                "sessionType": session_type.value,
            },
        )
        task = asyncio.get_running_loop().create_task(self._send_joined(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def exit(
        self,
        signal: UnloadSignal,
        *,
        position: float,
        progress: float,
        completed: bool,
    ) -> bool:
        """Send the left event for the first exit signal only.

        Returns True when this call delivered the event.
        """
        if self._exit_tracked:
            logger.debug("Ignoring duplicate exit signal %s", signal.value)
            return False
        self._exit_tracked = True
        now = self._clock()
        joined_at = self._joined_at or now
        metadata: dict[str, Any] = {
            "exitTime": _iso(now),
            "sessionDurationSeconds": int((now - joined_at).total_seconds()),
            "currentVideoPosition": position,
            "watchProgress": progress,
            "completed": completed,
        }
        logger.info("Viewer left (%s) at %.1fs", signal.value, position)
        event = AnalyticsEvent(
            token=self._token, event_type=AnalyticsEventType.LEFT_EARLY, metadata=metadata
        )
        return await self._beacon(event)

    async def close(self) -> None:
        """Cancel analytics still in flight."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def _send_joined(self, event: AnalyticsEvent) -> None:
        try:
            await self._track(event)
        except (ClientError, TimeoutError) as err:
            logger.warning("Failed to track session join: %s", err)
        except Exception:
            logger.exception("Unexpected error tracking session join")
