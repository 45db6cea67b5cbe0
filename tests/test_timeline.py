"""Tests for the interaction timeline reducer and scheduler."""

from __future__ import annotations

import pytest

from aiowebinar.models.types import InteractionStatus, InteractionType
from aiowebinar.timeline import (
    InteractionActivatedEvent,
    InteractionAnswered,
    InteractionClosedEvent,
    InteractionDismissed,
    InteractionScheduler,
    TimeAdvanced,
    TimelineState,
    active_interactions,
    all_triggered,
    reduce_timeline,
)
from tests.conftest import NOW, FakeClock, make_definition


def _advance(state: TimelineState, *times: float) -> TimelineState:
    for current_time in times:
        state = reduce_timeline(state, TimeAdvanced(current_time))
    return state


def _active_ids(state: TimelineState) -> list[str]:
    return [d.id for d in active_interactions(state)]


def test_not_active_before_trigger_time() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    state = _advance(state, 0, 30.5, 59.99)
    assert _active_ids(state) == []
    assert all_triggered(state) == []


def test_active_for_window_then_expired() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    for second in range(60, 90):
        state = _advance(state, second + 0.4)
        assert _active_ids(state) == ["poll"], second
    state = _advance(state, 90)
    assert _active_ids(state) == []
    [triggered] = all_triggered(state)
    assert triggered.status is InteractionStatus.EXPIRED
    assert triggered.answer is None


def test_duration_fallbacks() -> None:
    state = TimelineState.create(
        [
            make_definition("explicit", 10, duration_seconds=5),
            make_definition("configured", 10, config={"duration": 12}),
            make_definition("default", 10),
        ],
        default_duration=20,
    )
    state = _advance(state, 15)
    assert _active_ids(state) == ["configured", "default"]
    state = _advance(state, 22)
    assert _active_ids(state) == ["default"]
    state = _advance(state, 30)
    assert _active_ids(state) == []


def test_duplicate_and_out_of_order_updates_are_idempotent() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    state = _advance(state, 61)
    again = reduce_timeline(state, TimeAdvanced(61.7))
    assert again is state
    state = _advance(state, 65, 62, 65)
    assert _active_ids(state) == ["poll"]
    assert state.triggered == {"poll": 61}


def test_backward_seek_does_not_untrigger() -> None:
    state = TimelineState.create([make_definition("tip", 100, InteractionType.TIP)])
    state = _advance(state, 105, 20)
    assert [t.id for t in all_triggered(state)] == ["tip"]
    assert _active_ids(state) == []


def test_dismiss_only_affects_active() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    assert reduce_timeline(state, InteractionDismissed("poll")) is state
    state = _advance(state, 61)
    state = reduce_timeline(state, InteractionDismissed("poll"))
    assert _active_ids(state) == []
    state = _advance(state, 62, 30, 70)
    assert _active_ids(state) == []
    assert all_triggered(state)[0].status is InteractionStatus.DISMISSED


def test_answered_is_terminal_even_after_backward_seek() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    state = _advance(state, 75)
    state = reduce_timeline(
        state, InteractionAnswered("poll", {"selectedOptions": [1]}, NOW)
    )
    assert _active_ids(state) == []
    state = _advance(state, 61, 200)
    [triggered] = all_triggered(state)
    assert triggered.status is InteractionStatus.ANSWERED
    assert triggered.answer is not None
    assert triggered.answer.user_response == {"selectedOptions": [1]}
    again = reduce_timeline(state, InteractionAnswered("poll", {"selectedOptions": [0]}, NOW))
    assert again is state


def test_late_answer_after_window_counts() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    state = _advance(state, 95)
    state = reduce_timeline(state, InteractionAnswered("poll", {"selectedOptions": [0]}, NOW))
    assert all_triggered(state)[0].status is InteractionStatus.ANSWERED


def test_cannot_answer_pending_or_dismissed() -> None:
    state = TimelineState.create([make_definition("poll", 60)])
    assert reduce_timeline(state, InteractionAnswered("poll", {}, NOW)) is state
    state = _advance(state, 61)
    state = reduce_timeline(state, InteractionDismissed("poll"))
    assert reduce_timeline(state, InteractionAnswered("poll", {}, NOW)) is state


def test_overlapping_windows_and_ordering() -> None:
    state = TimelineState.create(
        [make_definition("b", 20, InteractionType.CTA), make_definition("a", 10)]
    )
    state = _advance(state, 25)
    assert _active_ids(state) == ["a", "b"]
    assert [t.id for t in all_triggered(state)] == ["a", "b"]


def test_unique_ids_required() -> None:
    with pytest.raises(ValueError):
        TimelineState.create([make_definition("x", 1), make_definition("x", 2)])


def test_unknown_event_rejected() -> None:
    state = TimelineState.create([])
    with pytest.raises(TypeError):
        reduce_timeline(state, object())  # type: ignore[arg-type]


def test_scheduler_announces_activation_once() -> None:
    scheduler = InteractionScheduler([make_definition("poll", 60)], clock=FakeClock())
    events: list[object] = []
    scheduler.add_event_listener(events.append)

    assert scheduler.advance(59) == []
    activated = scheduler.advance(60)
    assert [d.id for d in activated] == ["poll"]
    assert scheduler.advance(61) == []
    scheduler.advance(90)
    scheduler.advance(65)  # replay seek back into the window
    activations = [e for e in events if isinstance(e, InteractionActivatedEvent)]
    assert len(activations) == 1
    closed = [e for e in events if isinstance(e, InteractionClosedEvent)]
    assert closed[0].status is InteractionStatus.EXPIRED


def test_scheduler_dismiss_and_answer() -> None:
    clock = FakeClock()
    scheduler = InteractionScheduler(
        [make_definition("poll", 60), make_definition("cta", 60, InteractionType.CTA)],
        clock=clock,
    )
    events: list[object] = []
    scheduler.add_event_listener(events.append)
    scheduler.advance(61)

    assert scheduler.dismiss("cta") is True
    assert scheduler.dismiss("cta") is False
    assert scheduler.mark_answered("poll", {"selectedOptions": [2]}) is True
    assert scheduler.status("poll") is InteractionStatus.ANSWERED
    assert scheduler.status("cta") is InteractionStatus.DISMISSED
    assert scheduler.active == []
    answer = next(t.answer for t in scheduler.triggered if t.id == "poll")
    assert answer is not None and answer.answered_at == clock.now
    closed = {e.interaction.id: e.status for e in events if isinstance(e, InteractionClosedEvent)}
    assert closed == {"cta": InteractionStatus.DISMISSED, "poll": InteractionStatus.ANSWERED}


def test_scheduler_listener_errors_are_contained() -> None:
    scheduler = InteractionScheduler([make_definition("poll", 1)])

    def broken(_event: object) -> None:
        raise RuntimeError("listener bug")

    seen: list[object] = []
    scheduler.add_event_listener(broken)
    scheduler.add_event_listener(seen.append)
    scheduler.advance(1)
    assert len(seen) == 1


def test_scheduler_status_unknown_id() -> None:
    scheduler = InteractionScheduler([])
    with pytest.raises(KeyError):
        scheduler.status("missing")
