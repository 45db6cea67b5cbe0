"""Command-line interface for watching a webinar headlessly."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import aioconsole

from aiowebinar.api import WebinarApiClient
from aiowebinar.channel import RealtimeChannel, WebSocketChannel, channel_name
from aiowebinar.config import EngineConfig
from aiowebinar.end_screen import format_countdown
from aiowebinar.errors import AccessError, ChatSendError, InteractionSubmitError
from aiowebinar.feed import ChatFeedItem, FeedItem, InteractionFeedItem
from aiowebinar.models.access import AccessGranted
from aiowebinar.models.interaction import InteractionDefinition, PollResults
from aiowebinar.models.types import FeedFilter, InteractionEventType, InteractionType, UnloadSignal
from aiowebinar.player.controller import (
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackStartedEvent,
)
from aiowebinar.player.media import SimulatedMedia
from aiowebinar.session import (
    EndScreenShownEvent,
    FeedUpdatedEvent,
    RedirectEvent,
    ResultsUpdatedEvent,
    SessionEvent,
    WatchSession,
)
from aiowebinar.timeline import InteractionActivatedEvent, InteractionClosedEvent

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_DURATION = 3600.0

FILTER_ALIASES = {
    "all": FeedFilter.ALL,
    "chat": FeedFilter.CHAT_ONLY,
    "widgets": FeedFilter.WIDGETS_ONLY,
}


@dataclass
class CLIState:
    """Holds what the terminal has already shown."""

    feed_filter: FeedFilter = FeedFilter.ALL
    printed_chat: set[str] = field(default_factory=set)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the webinar watcher."""
    parser = argparse.ArgumentParser(description="Watch a webinar from the terminal")
    parser.add_argument("--base-url", required=True, help="Base url of the webinar site")
    parser.add_argument("--slug", required=True, help="Slug of the webinar to watch")
    parser.add_argument("--token", required=True, help="Access token of the registration")
    parser.add_argument(
        "--channel-url",
        default=None,
        help="WebSocket url of the real-time chat channel. Live chat is off if omitted.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file overriding engine timing defaults",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def load_config(path: Path | None) -> EngineConfig:
    """Load the engine configuration, defaults when no file is given."""
    if path is None:
        return EngineConfig()
    return EngineConfig.from_json(path.read_bytes())


def describe_interaction(definition: InteractionDefinition) -> str:
    """Return a one-line rendering of an interaction."""
    config = definition.config
    match definition.type:
        case InteractionType.POLL | InteractionType.QUIZ:
            options = config.get("options") or []
            choices = ", ".join(f"[{index}] {option}" for index, option in enumerate(options))
            detail = f"{definition.title} {choices}"
        case InteractionType.CTA | InteractionType.SPECIAL_OFFER:
            detail = f"{definition.title} -> {config.get('buttonUrl', '')}"
        case InteractionType.DOWNLOAD:
            detail = f"{definition.title} (download {config.get('fileUrl', '')})"
        case InteractionType.FEEDBACK | InteractionType.QUESTION | InteractionType.CONTACT_FORM:
            detail = f"{definition.title} (reply with: answer {definition.id} <text>)"
        case InteractionType.TIP:
            detail = f"Tip: {config.get('content') or definition.title}"
        case InteractionType.PAUSE:
            detail = f"Paused: {config.get('message') or definition.title}"
    return f"[{definition.type.value} {definition.id}] {detail}"


def build_response(definition: InteractionDefinition, value: str) -> dict[str, object]:
    """Turn the argument of the answer command into a response payload."""
    match definition.type:
        case InteractionType.POLL | InteractionType.QUIZ:
            return {"selectedOptions": [int(value)], "type": definition.type.value}
        case InteractionType.CTA | InteractionType.SPECIAL_OFFER | InteractionType.DOWNLOAD:
            return {"clicked": True}
        case InteractionType.FEEDBACK | InteractionType.QUESTION | InteractionType.CONTACT_FORM:
            return {"text": value}
        case InteractionType.TIP | InteractionType.PAUSE:
            return {"acknowledged": True}


def event_type_for(definition: InteractionDefinition) -> InteractionEventType:
    """Return the event type recorded when answering an interaction."""
    match definition.type:
        case InteractionType.CTA | InteractionType.SPECIAL_OFFER:
            return InteractionEventType.CLICKED
        case InteractionType.DOWNLOAD:
            return InteractionEventType.DOWNLOADED
        case _:
            return InteractionEventType.RESPONDED


def describe_feed_item(item: FeedItem) -> str:
    """Return a one-line rendering of a feed entry."""
    match item:
        case ChatFeedItem(data=message):
            badge = "*" if message.is_from_moderator else ""
            return f"{message.created_at:%H:%M:%S} {badge}{message.sender_name}: {message.message}"
        case InteractionFeedItem(data=triggered):
            return f"{item.timestamp:%H:%M:%S} {describe_interaction(triggered.definition)} ({triggered.status.value})"


def describe_results(results: PollResults) -> str:
    """Return the result distribution as text."""
    parts = [f"{option.option}: {option.percentage}%" for option in results.options]
    return f"{' | '.join(parts)} ({results.total_responses} responses)"


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as err:
        logger.error("Invalid configuration file %s: %s", args.config, err)
        return 2

    state = CLIState()

    def media_factory(access: AccessGranted) -> SimulatedMedia:
        return SimulatedMedia(access.webinar.duration or DEFAULT_VIDEO_DURATION)

    def channel_factory(access: AccessGranted) -> RealtimeChannel | None:
        if args.channel_url is None:
            return None
        return WebSocketChannel(
            args.channel_url,
            channel_name(access.webinar.id),
            max_backoff=config.channel_max_backoff,
        )

    async with WebinarApiClient(
        args.base_url,
        args.slug,
        args.token,
        request_timeout=config.request_timeout,
        beacon_timeout=config.beacon_timeout,
        keepalive_timeout=config.keepalive_timeout,
    ) as api:
        session = WatchSession(
            api,
            media_factory=media_factory,
            channel_factory=channel_factory,
            config=config,
        )
        session.add_event_listener(lambda event: _handle_session_event(session, state, event))
        try:
            access = await session.open()
        except AccessError as err:
            _print_event(err.user_message)
            logger.debug("Access refused: %s", err.detail)
            await session.close()
            return 1

        _print_event(f"Watching {access.webinar.title}")
        _print_instructions()

        keyboard_task = asyncio.create_task(_keyboard_loop(session, state))
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            keyboard_task.cancel()

        loop.add_signal_handler(signal.SIGINT, signal_handler)
        loop.add_signal_handler(signal.SIGTERM, signal_handler)
        try:
            await keyboard_task
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            logger.debug("Keyboard loop cancelled")
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
            await session.unload(UnloadSignal.BEFORE_UNLOAD)
            await session.close()

    return 0


def _handle_session_event(session: WatchSession, state: CLIState, event: SessionEvent) -> None:
    match event:
        case InteractionActivatedEvent(interaction=definition):
            _print_event(describe_interaction(definition))
        case InteractionClosedEvent(interaction=definition, status=status):
            _print_event(f"[{definition.id}] closed ({status.value})")
        case ResultsUpdatedEvent(interaction_id=interaction_id, results=results):
            if results is not None:
                _print_event(f"[{interaction_id}] {describe_results(results)}")
        case FeedUpdatedEvent(state=feed_state):
            if state.feed_filter is FeedFilter.WIDGETS_ONLY:
                return
            for message in feed_state.messages:
                if message.id in state.printed_chat:
                    continue
                state.printed_chat.add(message.id)
                _print_event(f"{message.sender_name}: {message.message}")
        case PlaybackStartedEvent():
            _print_event("Playback started")
        case PlaybackEndedEvent():
            _print_event("Playback ended")
        case PlaybackErrorEvent(message=message):
            _print_event(message)
        case EndScreenShownEvent(end_screen=end_screen):
            screen = end_screen.config
            _print_event(screen.title or "Thanks for watching!")
            if screen.message:
                _print_event(screen.message)
            if end_screen.countdown is not None:
                _print_event(f"Redirecting in {format_countdown(end_screen.countdown)}")
        case RedirectEvent(url=url):
            _print_event(f"Continue at {url}")


async def _keyboard_loop(session: WatchSession, state: CLIState) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            raw_line = line.strip()
            if not raw_line:
                continue
            keyword, _, rest = raw_line.partition(" ")
            keyword = keyword.lower()
            rest = rest.strip()
            if keyword in {"quit", "exit", "q"}:
                break
            if keyword == "say":
                await _say(session, rest)
            elif keyword == "dismiss":
                if not await session.dismiss(rest):
                    _print_event(f"No active interaction {rest}")
            elif keyword == "answer":
                await _answer(session, rest)
            elif keyword == "filter":
                _set_filter(session, state, rest)
            elif keyword in {"toggle", "p"}:
                if not session.controller.toggle_play_pause():
                    _print_event("Playback is held by an interaction")
            else:
                _print_event("Unknown command")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


async def _say(session: WatchSession, text: str) -> None:
    if not text:
        _print_event("Usage: say <text>")
        return
    try:
        await session.send_chat(text)
    except ChatSendError as err:
        _print_event(str(err))


async def _answer(session: WatchSession, rest: str) -> None:
    interaction_id, _, value = rest.partition(" ")
    definition = session.scheduler.definition(interaction_id)
    if definition is None:
        _print_event(f"Unknown interaction {interaction_id}")
        return
    try:
        response = build_response(definition, value.strip())
    except ValueError:
        _print_event("Usage: answer <id> <option number>")
        return
    try:
        accepted = await session.respond(interaction_id, response, event_type_for(definition))
    except InteractionSubmitError as err:
        _print_event(f"Could not submit: {err}")
        return
    if not accepted:
        _print_event(f"Interaction {interaction_id} cannot be answered")


def _set_filter(session: WatchSession, state: CLIState, value: str) -> None:
    feed_filter = FILTER_ALIASES.get(value.lower())
    if feed_filter is None:
        _print_event("Usage: filter all|chat|widgets")
        return
    state.feed_filter = feed_filter
    for item in session.feed(feed_filter):
        _print_event(describe_feed_item(item))


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions() -> None:
    print(  # noqa: T201
        (
            "Commands: say <text>, dismiss <id>, answer <id> <option>, "
            "filter all|chat|widgets, toggle(p), quit(q)"
        ),
        flush=True,
    )


def main() -> int:
    """Run the webinar watcher."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
