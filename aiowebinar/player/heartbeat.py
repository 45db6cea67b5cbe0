"""Jittered watch progress reporting."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from aiohttp import ClientError

from aiowebinar.config import PROGRESS_JITTER_MAX_SECONDS, PROGRESS_UPDATE_INTERVAL_SECONDS
from aiowebinar.models.reports import ProgressReport
from aiowebinar.models.types import ProgressEventType

from .controller import progress_percent

logger = logging.getLogger(__name__)

ProgressSender = Callable[[ProgressReport], Awaitable[None]]
FinalSender = Callable[[ProgressReport], Awaitable[bool]]


class HeartbeatReporter:
    """Reports watch progress while playback advances.

    A report is due once playback moved at least `base_interval + j` seconds
    away from the last reported position, where `j` is redrawn from
    `[0, jitter_max)` after every report. The jitter spreads the reports of
    viewers who joined at the same moment.
    """

    def __init__(
        self,
        send: ProgressSender,
        send_final: FinalSender,
        *,
        token: str,
        base_interval: float = PROGRESS_UPDATE_INTERVAL_SECONDS,
        jitter_max: float = PROGRESS_JITTER_MAX_SECONDS,
        rng: random.Random | None = None,
        start_position: float = 0.0,
    ) -> None:
        """Create a reporter; no report is due right after `start_position`."""
        self._send = send
        self._send_final = send_final
        self._token = token
        self._base_interval = base_interval
        self._jitter_max = jitter_max
        self._rng = rng or random.Random()
        self._jitter = self._draw_jitter()
        self._last_reported_time = start_position
        self._ended = False
        self._final_sent = False
        self._closed = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def jitter(self) -> float:
        """Return the jitter of the next report."""
        return self._jitter

    @property
    def last_reported_time(self) -> float:
        """Return the position of the last report."""
        return self._last_reported_time

    @property
    def final_sent(self) -> bool:
        """Return True once the final report was dispatched."""
        return self._final_sent

    def on_time_update(self, current_time: float, duration: float | None) -> bool:
        """Send a heartbeat if one is due; return True when one was sent."""
        if self._ended or self._closed:
            return False
        if abs(current_time - self._last_reported_time) < self._base_interval + self._jitter:
            return False
        self._last_reported_time = current_time
        self._jitter = self._draw_jitter()
        self._dispatch(
            ProgressReport(
                token=self._token,
                progress=progress_percent(current_time, duration),
                position=current_time,
                event_type=ProgressEventType.VIDEO_HEARTBEAT,
            )
        )
        return True

    def report_completed(self, position: float) -> None:
        """Report that the video played to the end; stops further heartbeats."""
        if self._ended or self._closed:
            return
        self._ended = True
        self._last_reported_time = position
        self._dispatch(
            ProgressReport(
                token=self._token,
                progress=100.0,
                position=position,
                event_type=ProgressEventType.VIDEO_COMPLETED,
                completed=True,
            )
        )

    async def send_final(
        self, position: float, percent: float, completed: bool, session_duration: int
    ) -> bool:
        """Send the last report of the session, at most once."""
        if self._final_sent:
            return False
        self._final_sent = True
        report = ProgressReport(
            token=self._token,
            progress=percent,
            position=position,
            event_type=ProgressEventType.VIDEO_FINAL,
            completed=completed,
            session_duration_seconds=session_duration,
        )
        logger.debug("Sending final progress %.1f%% at %.1fs", percent, position)
        return await self._send_final(report)

    async def close(self) -> None:
        """Cancel reports still in flight."""
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _draw_jitter(self) -> float:
        if self._jitter_max <= 0:
            return 0.0
        return self._rng.random() * self._jitter_max

    def _dispatch(self, report: ProgressReport) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(report))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, report: ProgressReport) -> None:
        try:
            await self._send(report)
        except (ClientError, TimeoutError) as err:
            logger.warning("Failed to report progress at %.1fs: %s", report.position, err)
        except Exception:
            logger.exception("Unexpected error reporting progress at %.1fs", report.position)
