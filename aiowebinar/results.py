"""Aggregate poll and quiz results."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from aiohttp import ClientError

from aiowebinar.config import POLL_RESULTS_INTERVAL_SECONDS
from aiowebinar.models.interaction import PollResults

logger = logging.getLogger(__name__)

ResultsFetcher = Callable[[str], Awaitable[PollResults | None]]
ResultsCallback = Callable[["PollResultAggregator"], Awaitable[None] | None]


class PollResultAggregator:
    """Keeps the aggregate answers of one poll or quiz up to date.

    Results are only fetched once they should be shown: after the viewer
    answered, or when showing them was forced (for example because the
    viewer answered in an earlier visit). The first fetch happens right away,
    then the results are refreshed every `interval` seconds until `close()`.
    """

    def __init__(
        self,
        fetch: ResultsFetcher,
        interaction_id: str,
        *,
        interval: float = POLL_RESULTS_INTERVAL_SECONDS,
    ) -> None:
        """Create an aggregator; nothing is fetched until it is enabled."""
        self._fetch = fetch
        self._interaction_id = interaction_id
        self._interval = interval
        self._answered = False
        self._force_show = False
        self._results: PollResults | None = None
        self._error: str | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._listeners: list[ResultsCallback] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def interaction_id(self) -> str:
        """Return the interaction the results belong to."""
        return self._interaction_id

    @property
    def results(self) -> PollResults | None:
        """Return the latest results."""
        return self._results

    @property
    def error(self) -> str | None:
        """Return the message of the last failed fetch, cleared on success."""
        return self._error

    @property
    def should_show_results(self) -> bool:
        """Return True once results are due to the viewer."""
        return self._answered or self._force_show

    @property
    def polling(self) -> bool:
        """Return True while the refresh loop runs."""
        return self._poll_task is not None and not self._poll_task.done()

    def add_listener(self, callback: ResultsCallback) -> Callable[[], None]:
        """Register a callback invoked after each successful fetch.

        Returns a function to remove the listener.
        """
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def set_answered(self, answered: bool = True) -> None:
        """Record that the viewer answered."""
        self._answered = answered
        self._update()

    def set_force_show(self, force_show: bool = True) -> None:
        """Show results regardless of the viewer's own answer."""
        self._force_show = force_show
        self._update()

    async def refresh(self) -> PollResults | None:
        """Fetch the results once."""
        if self._closed:
            return None
        try:
            results = await self._fetch(self._interaction_id)
        except (ClientError, TimeoutError, ValueError, LookupError) as err:
            if self._closed:
                return None
            self._error = "Failed to load results"
            logger.warning("Failed to load results of %s: %s", self._interaction_id, err)
            return None
        if self._closed:
            return None
        self._error = None
        self._results = results
        self._notify()
        return results

    async def close(self) -> None:
        """Stop polling; results arriving afterwards are dropped."""
        self._closed = True
        await self._stop()
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _update(self) -> None:
        if self._closed:
            return
        if self.should_show_results and not self.polling:
            logger.debug("Polling results of %s every %ss", self._interaction_id, self._interval)
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        elif not self.should_show_results and self.polling:
            task = asyncio.get_running_loop().create_task(self._stop())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _stop(self) -> None:
        if self._poll_task is None:
            return
        task, self._poll_task = self._poll_task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _poll_loop(self) -> None:
        while not self._closed:
            await self.refresh()
            await asyncio.sleep(self._interval)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(self)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Error in results listener %s", callback)
