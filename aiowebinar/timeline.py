"""Interaction timeline scheduling.

The timeline answers "which interactions should be shown right now" from the
current playback time and the immutable list of interaction definitions. The
per-viewer state lives in an immutable `TimelineState` which is only changed by
`reduce_timeline`; `InteractionScheduler` keeps the current state for a viewing
session and notifies listeners about activations.

Two rules shape the state machine:

* Triggering is monotonic. An interaction counts as triggered from the first
  time playback reaches its trigger time, and seeking backwards never undoes
  that. The "all triggered" projection used by the feed is built from it.
* Activity is bounded by the display window. An interaction is active only
  while `trigger_time <= second < trigger_time + duration` and it was neither
  dismissed nor answered. Dismissed and answered are terminal.

The scheduler never looks at the interaction type.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from aiowebinar.config import INTERACTION_DEFAULT_DURATION_SECONDS
from aiowebinar.models.interaction import AnsweredInteraction, InteractionDefinition
from aiowebinar.models.types import InteractionStatus

logger = logging.getLogger(__name__)


# Events


class TimelineEvent:
    """Base class of inputs to `reduce_timeline`."""


@dataclass(frozen=True)
class TimeAdvanced(TimelineEvent):
    """The media element reported a new playback time."""

    current_time: float


@dataclass(frozen=True)
class InteractionDismissed(TimelineEvent):
    """The viewer closed an interaction without responding."""

    interaction_id: str


@dataclass(frozen=True)
class InteractionAnswered(TimelineEvent):
    """The viewer responded to an interaction."""

    interaction_id: str
    response: Mapping[str, Any]
    answered_at: datetime


# State


@dataclass(frozen=True)
class TimelineState:
    """Per-viewer interaction state for one viewing session."""

    definitions: tuple[InteractionDefinition, ...]
    default_duration: int = INTERACTION_DEFAULT_DURATION_SECONDS
    current_second: int | None = None
    triggered: Mapping[str, int] = field(default_factory=dict)
    """Interaction id to the playback second it was first reached at."""
    dismissed: frozenset[str] = frozenset()
    answered: Mapping[str, AnsweredInteraction] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        definitions: Iterable[InteractionDefinition],
        default_duration: int = INTERACTION_DEFAULT_DURATION_SECONDS,
    ) -> TimelineState:
        """Build the initial state, ordering definitions by trigger time."""
        ordered = sorted(definitions, key=lambda d: d.trigger_time)
        ids = [d.id for d in ordered]
        if len(ids) != len(set(ids)):
            raise ValueError("interaction ids must be unique")
        return cls(definitions=tuple(ordered), default_duration=default_duration)

    def definition(self, interaction_id: str) -> InteractionDefinition | None:
        """Return the definition with the given id."""
        for definition in self.definitions:
            if definition.id == interaction_id:
                return definition
        return None


@dataclass(frozen=True)
class TriggeredInteraction:
    """An interaction that playback has reached, with its current state."""

    definition: InteractionDefinition
    status: InteractionStatus
    answer: AnsweredInteraction | None = None

    @property
    def id(self) -> str:
        """Return the interaction id."""
        return self.definition.id

    @property
    def trigger_time(self) -> int:
        """Return the trigger time in seconds."""
        return self.definition.trigger_time


def _in_window(definition: InteractionDefinition, second: int, default_duration: int) -> bool:
    end = definition.trigger_time + definition.effective_duration(default_duration)
    return definition.trigger_time <= second < end


def status_of(state: TimelineState, definition: InteractionDefinition) -> InteractionStatus:
    """Return the lifecycle state of one interaction."""
    if definition.id in state.answered:
        return InteractionStatus.ANSWERED
    if definition.id in state.dismissed:
        return InteractionStatus.DISMISSED
    if definition.id not in state.triggered:
        return InteractionStatus.PENDING
    if state.current_second is not None and _in_window(
        definition, state.current_second, state.default_duration
    ):
        return InteractionStatus.ACTIVE
    return InteractionStatus.EXPIRED


def reduce_timeline(state: TimelineState, event: TimelineEvent) -> TimelineState:
    """Apply one event and return the resulting state.

    Events that do not change anything return `state` itself, which lets
    callers detect no-ops with an identity check.
    """
    match event:
        case TimeAdvanced(current_time=current_time):
            return _advance(state, current_time)
        case InteractionDismissed(interaction_id=interaction_id):
            definition = state.definition(interaction_id)
            if definition is None or status_of(state, definition) is not InteractionStatus.ACTIVE:
                return state
            return replace(state, dismissed=state.dismissed | {interaction_id})
        case InteractionAnswered(
            interaction_id=interaction_id, response=response, answered_at=answered_at
        ):
            definition = state.definition(interaction_id)
            if definition is None:
                return state
            status = status_of(state, definition)
            if status not in (InteractionStatus.ACTIVE, InteractionStatus.EXPIRED):
                return state
            answer = AnsweredInteraction(
                definition=definition,
                user_response=dict(response),
                answered_at=answered_at,
            )
            return replace(state, answered={**state.answered, interaction_id: answer})
        case _:
            raise TypeError(f"Unsupported timeline event: {event!r}")


def _advance(state: TimelineState, current_time: float) -> TimelineState:
    if math.isnan(current_time):
        return state
    second = math.floor(current_time)
    newly_triggered = {
        d.id: second
        for d in state.definitions
        if d.id not in state.triggered and second >= d.trigger_time
    }
    if second == state.current_second and not newly_triggered:
        return state
    triggered = {**state.triggered, **newly_triggered} if newly_triggered else state.triggered
    return replace(state, current_second=second, triggered=triggered)


def active_interactions(state: TimelineState) -> list[InteractionDefinition]:
    """Return the interactions to display right now, ordered by trigger time."""
    return [
        d for d in state.definitions if status_of(state, d) is InteractionStatus.ACTIVE
    ]


def all_triggered(state: TimelineState) -> list[TriggeredInteraction]:
    """Return every interaction reached so far, ordered by trigger time."""
    return [
        TriggeredInteraction(
            definition=d,
            status=status_of(state, d),
            answer=state.answered.get(d.id),
        )
        for d in state.definitions
        if d.id in state.triggered
    ]


# Stateful wrapper


class SchedulerEvent:
    """Base event type used by InteractionScheduler.add_event_listener()."""


@dataclass
class InteractionActivatedEvent(SchedulerEvent):
    """An interaction became active for the first time."""

    interaction: InteractionDefinition


@dataclass
class InteractionClosedEvent(SchedulerEvent):
    """An active interaction left the active set."""

    interaction: InteractionDefinition
    status: InteractionStatus


SchedulerCallback = Callable[[SchedulerEvent], Awaitable[None] | None]


class InteractionScheduler:
    """Holds the timeline state of one viewer and reports transitions."""

    def __init__(
        self,
        definitions: Iterable[InteractionDefinition],
        *,
        default_duration: int = INTERACTION_DEFAULT_DURATION_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a scheduler for the given interaction definitions."""
        self._state = TimelineState.create(definitions, default_duration)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._event_cbs: list[SchedulerCallback] = []
        self._announced: set[str] = set()
        self._active_ids: list[str] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> TimelineState:
        """Return the current immutable state."""
        return self._state

    @property
    def active(self) -> list[InteractionDefinition]:
        """Return the currently active interactions."""
        return active_interactions(self._state)

    @property
    def triggered(self) -> list[TriggeredInteraction]:
        """Return every triggered interaction with its current state."""
        return all_triggered(self._state)

    def status(self, interaction_id: str) -> InteractionStatus:
        """Return the lifecycle state of an interaction."""
        definition = self._state.definition(interaction_id)
        if definition is None:
            raise KeyError(interaction_id)
        return status_of(self._state, definition)

    def definition(self, interaction_id: str) -> InteractionDefinition | None:
        """Return the definition with the given id."""
        return self._state.definition(interaction_id)

    def advance(self, current_time: float) -> list[InteractionDefinition]:
        """Feed a playback time, return interactions activated for the first time."""
        new_state = reduce_timeline(self._state, TimeAdvanced(current_time))
        if new_state is self._state:
            return []
        self._state = new_state
        return self._publish_changes()

    def dismiss(self, interaction_id: str) -> bool:
        """Dismiss an active interaction, return False if it was not active."""
        new_state = reduce_timeline(self._state, InteractionDismissed(interaction_id))
        if new_state is self._state:
            logger.debug("Ignoring dismiss of inactive interaction %s", interaction_id)
            return False
        self._state = new_state
        logger.debug("Interaction %s dismissed", interaction_id)
        self._publish_changes()
        return True

    def mark_answered(
        self, interaction_id: str, response: Mapping[str, Any], answered_at: datetime | None = None
    ) -> bool:
        """Record the viewer's response, return False if it cannot be answered."""
        event = InteractionAnswered(
            interaction_id=interaction_id,
            response=response,
            answered_at=answered_at or self._clock(),
        )
        new_state = reduce_timeline(self._state, event)
        if new_state is self._state:
            logger.debug("Ignoring answer for interaction %s", interaction_id)
            return False
        self._state = new_state
        logger.debug("Interaction %s answered", interaction_id)
        self._publish_changes()
        return True

    def add_event_listener(self, callback: SchedulerCallback) -> Callable[[], None]:
        """Register a callback for activation and closing events.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _publish_changes(self) -> list[InteractionDefinition]:
        active = self.active
        active_ids = [d.id for d in active]
        activated: list[InteractionDefinition] = []
        for definition in active:
            if definition.id not in self._announced:
                self._announced.add(definition.id)
                activated.append(definition)
                logger.debug(
                    "Interaction %s activated at %ss", definition.id, self._state.current_second
                )
                self._signal_event(InteractionActivatedEvent(definition))
        for interaction_id in self._active_ids:
            if interaction_id not in active_ids:
                definition = self._state.definition(interaction_id)
                if definition is None:
                    raise RuntimeError(f"Unknown active interaction {interaction_id}")
                self._signal_event(
                    InteractionClosedEvent(definition, status_of(self._state, definition))
                )
        self._active_ids = active_ids
        return activated

    def _signal_event(self, event: SchedulerEvent) -> None:
        for callback in list(self._event_cbs):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Error in scheduler callback %s", callback)
