"""End screen shown after the video completes."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

from aiohttp import ClientError

from aiowebinar.models.access import EndScreenConfig
from aiowebinar.models.reports import AnalyticsEvent
from aiowebinar.models.types import AnalyticsEventType

logger = logging.getLogger(__name__)

EventSender = Callable[[AnalyticsEvent], Awaitable[None]]
RedirectCallback = Callable[[str], Awaitable[None] | None]
TickCallback = Callable[[int], None]


def format_countdown(seconds: int) -> str:
    """Return the countdown as `m:ss`, or `Ns` below one minute."""
    minutes, secs = divmod(max(0, seconds), 60)
    if minutes:
        return f"{minutes}:{secs:02d}"
    return f"{secs}s"


class EndScreen:
    """Tracks the end screen and runs its optional redirect countdown."""

    def __init__(
        self,
        config: EndScreenConfig,
        *,
        token: str,
        track: EventSender,
        on_redirect: RedirectCallback | None = None,
        on_tick: TickCallback | None = None,
        tick_interval: float = 1.0,
    ) -> None:
        """Create the end screen; call `show()` to display it."""
        self._config = config
        self._token = token
        self._track = track
        self._on_redirect = on_redirect
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._countdown: int | None = None
        self._countdown_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._shown = False
        self._redirected = False
        self._closed = False

    @property
    def config(self) -> EndScreenConfig:
        """Return the end screen configuration."""
        return self._config

    @property
    def shown(self) -> bool:
        """Return True once the end screen was displayed."""
        return self._shown

    @property
    def countdown(self) -> int | None:
        """Return the seconds left before the automatic redirect."""
        return self._countdown

    @property
    def redirected(self) -> bool:
        """Return True once the viewer was sent to the redirect url."""
        return self._redirected

    @property
    def has_button(self) -> bool:
        """Return True when a call to action button is configured."""
        return bool(self._config.button_text and self._config.button_url)

    def show(self) -> bool:
        """Display the end screen; the view is tracked only the first time."""
        if self._shown or self._closed:
            return False
        self._shown = True
        self._send(
            AnalyticsEventType.END_SCREEN_VIEWED,
            {
                "hasButton": self.has_button,
                "hasRedirect": bool(self._config.redirect_url),
                "redirectDelay": self._config.redirect_delay,
            },
        )
        delay = self._config.redirect_delay
        if self._config.redirect_url and delay is not None and delay > 0:
            self._countdown = math.ceil(delay * 60)
            self._countdown_task = asyncio.get_running_loop().create_task(self._run_countdown())
        return True

    def click_cta(self) -> str | None:
        """Track a click on the call to action button and return its url."""
        if not self.has_button:
            return None
        self._send(
            AnalyticsEventType.END_SCREEN_CTA_CLICKED,
            {"buttonText": self._config.button_text, "buttonUrl": self._config.button_url},
        )
        return self._config.button_url

    async def skip_redirect(self) -> None:
        """Redirect right away instead of waiting for the countdown."""
        self._cancel_countdown()
        await self._redirect(automatic=False)

    async def close(self) -> None:
        """Stop the countdown."""
        self._closed = True
        self._cancel_countdown()
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _run_countdown(self) -> None:
        with suppress(asyncio.CancelledError):
            while self._countdown is not None and self._countdown > 0:
                await asyncio.sleep(self._tick_interval)
                self._countdown -= 1
                if self._on_tick is not None:
                    self._on_tick(self._countdown)
            self._countdown_task = None
            await self._redirect(automatic=True)

    def _cancel_countdown(self) -> None:
        self._countdown = None
        if self._countdown_task is not None and self._countdown_task is not asyncio.current_task():
            self._countdown_task.cancel()
        self._countdown_task = None

    async def _redirect(self, *, automatic: bool) -> None:
        url = self._config.redirect_url
        if self._redirected or self._closed or not url:
            return
        self._redirected = True
        logger.info("Redirecting to %s (automatic: %s)", url, automatic)
        self._send(AnalyticsEventType.END_SCREEN_REDIRECTED, {"redirectUrl": url, "automatic": automatic})
        if self._on_redirect is not None:
            result = self._on_redirect(url)
            if asyncio.iscoroutine(result):
                await result

    def _send(self, event_type: AnalyticsEventType, metadata: dict[str, Any]) -> None:
        event = AnalyticsEvent(token=self._token, event_type=event_type, metadata=metadata)
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: AnalyticsEvent) -> None:
        try:
            await self._track(event)
        except (ClientError, TimeoutError) as err:
            logger.warning("Failed to track %s: %s", event.event_type.value, err)
        except Exception:
            logger.exception("Unexpected error tracking %s", event.event_type.value)
