from __future__ import annotations

from typing import List

import pytest

from kioskguard.errors import InvalidTransition
from kioskguard.models import UpdateStatus
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.state_machine import StateMachine
from kioskguard.runtime.timers import ManualScheduler, PeriodicTask
from kioskguard.updater.business_updater import STATUS_TRANSITIONS


def test_event_bus_runs_handlers_in_order_and_isolates_failures() -> None:
    bus: EventBus[int] = EventBus("test")
    seen: List[str] = []

    def boom(_: int) -> None:
        seen.append("boom")
        raise RuntimeError("handler bug")

    bus.subscribe(lambda e: seen.append(f"a{e}"))
    bus.subscribe(boom)
    bus.subscribe(lambda e: seen.append(f"c{e}"))

    bus.emit(1)
    assert seen == ["a1", "boom", "c1"]


def test_event_bus_disposer_unsubscribes_once() -> None:
    bus: EventBus[str] = EventBus()
    seen: List[str] = []
    dispose = bus.subscribe(seen.append)
    bus.emit("x")
    dispose()
    dispose()
    bus.emit("y")
    assert seen == ["x"]
    assert len(bus) == 0


def test_manual_scheduler_fires_in_due_order() -> None:
    s = ManualScheduler(start=100.0)
    order: List[str] = []
    s.call_later(2.0, lambda: order.append("late"))
    s.call_later(1.0, lambda: order.append("early"))
    s.advance(0.5)
    assert order == []
    s.advance(2.0)
    assert order == ["early", "late"]
    assert s.now() == pytest.approx(102.5)


def test_manual_scheduler_cancelled_timer_never_fires() -> None:
    s = ManualScheduler()
    fired: List[int] = []
    h = s.call_later(1.0, lambda: fired.append(1))
    h.cancel()
    s.advance(5.0)
    assert fired == []
    assert s.pending == 0


def test_timer_callback_errors_do_not_stop_the_clock() -> None:
    s = ManualScheduler()
    fired: List[int] = []

    def bad() -> None:
        raise ValueError("oops")

    s.call_later(1.0, bad)
    s.call_later(2.0, lambda: fired.append(2))
    s.advance(3.0)
    assert fired == [2]


def test_periodic_task_start_stop_reschedule() -> None:
    s = ManualScheduler()
    ticks: List[float] = []
    task = PeriodicTask(s, 1.0, lambda: ticks.append(s.now()), name="t")
    task.start()
    task.start()
    s.advance(3.0)
    assert len(ticks) == 3

    task.reschedule(2.0)
    assert task.running
    s.advance(4.0)
    assert len(ticks) == 5

    task.stop()
    assert not task.running
    s.advance(10.0)
    assert len(ticks) == 5


def test_state_machine_rejects_transitions_outside_table() -> None:
    sm = StateMachine(UpdateStatus.idle, STATUS_TRANSITIONS, name="updater")
    assert sm.can(UpdateStatus.checking)
    assert not sm.can(UpdateStatus.installing)

    prev = sm.transition(UpdateStatus.checking)
    assert prev == UpdateStatus.idle
    assert sm.state == UpdateStatus.checking

    with pytest.raises(InvalidTransition) as ei:
        sm.transition(UpdateStatus.installing)
    assert ei.value.source == UpdateStatus.checking
    assert "checking -> installing" in str(ei.value)


def test_state_machine_transition_from_requires_allowed_source() -> None:
    sm = StateMachine("a", {"a": ["b"], "b": ["a"]})
    with pytest.raises(InvalidTransition):
        sm.transition_from(["b"], "a")
    assert sm.transition_from(["a"], "b") == "a"
    sm.force("a")
    assert sm.state == "a"
