from __future__ import annotations

from typing import List

import pytest

from kioskguard import errors
from kioskguard.errors import SurfaceRequiredError
from kioskguard.models import CrashEvent, CrashReason, RecoveryAction, RecoveryEvent, is_restartable
from kioskguard.recovery.crash_handler import CrashHandler
from kioskguard.runtime.timers import ManualScheduler


def test_restartable_reasons() -> None:
    assert is_restartable(CrashReason.crashed)
    assert is_restartable(CrashReason.oom)
    assert is_restartable(CrashReason.abnormal_exit)
    assert not is_restartable(CrashReason.killed)
    assert not is_restartable(CrashReason.normal_exit)
    assert not is_restartable(CrashReason.integrity_failure)


def test_second_crash_exceeds_limit_of_one(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    exceeded: List[List[CrashEvent]] = []
    ch.start(ui, {"max_restarts": 1, "restart_window_ms": 60_000}, on_max_restarts_exceeded=exceeded.append)

    first = ch.trigger_crash_recovery(ui)
    second = ch.trigger_crash_recovery(ui)

    assert first.success is True
    assert first.action == RecoveryAction.reload
    assert second.success is False
    assert second.error == errors.MAX_RESTARTS_EXCEEDED
    assert len(exceeded) == 1
    assert len(exceeded[0]) == 2
    assert ch.get_state(ui).max_restarts_exceeded is True


def test_crash_schedules_reload_after_delay(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    events: List[RecoveryEvent] = []
    ch.on_event(events.append)
    ch.start(ui, {"restart_delay_ms": 1_000})

    res = ch.handle_crash(ui, "oom", 137)
    assert res.action == RecoveryAction.reload
    assert ch.pending_reloads(ui) == 1

    s.advance(0.5)
    assert ui.reloads == 0
    s.advance(0.6)
    assert ui.reloads == 1
    assert ch.pending_reloads(ui) == 0
    assert [e.type for e in events] == ["crash", "surface-reloaded"]
    assert events[0].crash.exit_code == 137
    assert events[0].crash.url == "http://kiosk.local/index.html"


def test_non_restartable_crash_is_recorded_but_not_reloaded(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    ch.start(ui)

    res = ch.handle_crash(ui, CrashReason.killed, 9)
    s.advance(5.0)

    assert res.success is True
    assert res.action == RecoveryAction.none
    assert ui.reloads == 0
    assert [c.reason for c in ch.get_recent_crashes(ui)] == [CrashReason.killed]


def test_crashes_outside_window_are_pruned(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    ch.start(ui, {"max_restarts": 1, "restart_window_ms": 10_000})

    assert ch.trigger_crash_recovery(ui).success
    s.advance(11.0)
    assert ch.trigger_crash_recovery(ui).success
    assert len(ch.get_recent_crashes(ui)) == 1


def test_exceeded_flag_persists_until_cleared(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    ch.start(ui, {"max_restarts": 0})

    assert ch.trigger_crash_recovery(ui).error == errors.MAX_RESTARTS_EXCEEDED
    ch.reset_restart_limit(ui)
    assert ch.get_state(ui).max_restarts_exceeded is False

    ch.clear_crash_history(ui)
    ch.update_config(ui, {"max_restarts": 2})
    assert ch.trigger_crash_recovery(ui).success
    assert ch.get_state(ui).config.max_restarts == 2


def test_handle_crash_when_not_monitoring(make_surface) -> None:
    ch = CrashHandler(scheduler=ManualScheduler())
    res = ch.handle_crash(make_surface(), "crashed", 1)
    assert res.success is False
    assert res.error == errors.MONITORING_NOT_ACTIVE


def test_stop_cancels_pending_reload_and_keeps_history(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    ch.start(ui)
    ch.trigger_crash_recovery(ui)
    ch.stop(ui)
    s.advance(5.0)
    assert ui.reloads == 0

    ch.start(ui)
    assert len(ch.get_recent_crashes(ui)) == 1


def test_destroyed_surface_is_not_reloaded(make_surface) -> None:
    s = ManualScheduler()
    ch = CrashHandler(scheduler=s)
    ui = make_surface()
    ch.start(ui)
    ch.trigger_crash_recovery(ui)
    ui.destroyed = True
    s.advance(2.0)
    assert ui.reloads == 0


def test_surface_reference_is_required() -> None:
    ch = CrashHandler(scheduler=ManualScheduler())
    with pytest.raises(SurfaceRequiredError):
        ch.get_state(None)
