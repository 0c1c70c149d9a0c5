from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import pytest

from kioskguard import errors
from kioskguard.errors import AlreadyActiveError, ConfigurationError
from kioskguard.models import ProcessState, RestartStrategy, WatchdogEvent, WatchdogEventType
from kioskguard.runtime.timers import ManualScheduler
from kioskguard.watchdog.backoff import RestartBackoff
from kioskguard.watchdog.monitor import ProcessWatchdog

E = WatchdogEventType


class FakeHost:
    """Process table double: liveness, spawn and terminate are all scripted."""

    def __init__(self) -> None:
        self.alive: Dict[int, bool] = {}
        self.spawned: List[Sequence[str]] = []
        self.terminated: List[int] = []
        self.spawn_ok = True
        self._next_pid = 500

    def liveness(self, pid: int) -> bool:
        return self.alive.get(pid, False)

    def spawner(self, path: str, args: Sequence[str], cwd: Optional[str]) -> Optional[int]:
        self.spawned.append([path, *args])
        if not self.spawn_ok:
            return None
        self._next_pid += 1
        self.alive[self._next_pid] = True
        return self._next_pid

    def terminator(self, pid: int) -> bool:
        self.terminated.append(pid)
        self.alive[pid] = False
        return True

    def finder(self, name: str) -> Optional[int]:
        return next((pid for pid, up in self.alive.items() if up), None) if name == "kiosk" else None


def _watchdog(host: FakeHost, s: ManualScheduler, **cfg) -> ProcessWatchdog:
    base = {"check_interval_ms": 1_000, "executable_path": "/opt/kiosk/shell", "executable_args": ["--kiosk"]}
    base.update(cfg)
    return ProcessWatchdog(
        base,
        scheduler=s,
        liveness=host.liveness,
        spawner=host.spawner,
        terminator=host.terminator,
        process_finder=host.finder,
    )


def test_exponential_backoff_sequence_is_capped() -> None:
    b = RestartBackoff(RestartStrategy.exponential_backoff, max_backoff_delay_ms=5_000)
    assert [b.next_delay_ms() for _ in range(5)] == [1_000, 2_000, 4_000, 5_000, 5_000]
    b.reset()
    assert b.next_delay_ms() == 1_000


def test_fixed_backoff_strategies() -> None:
    assert RestartBackoff(RestartStrategy.immediate).next_delay_ms() == 0
    assert RestartBackoff(RestartStrategy.delayed, restart_delay_ms=750).next_delay_ms() == 750
    assert RestartBackoff(RestartStrategy.none).next_delay_ms() == -1


def test_start_rejects_bad_pid_and_double_start() -> None:
    host = FakeHost()
    wd = _watchdog(host, ManualScheduler())
    with pytest.raises(ConfigurationError):
        wd.start(0)
    host.alive[10] = True
    wd.start(10)
    with pytest.raises(AlreadyActiveError) as ei:
        wd.start(10)
    assert str(ei.value) == errors.WATCHDOG_ALREADY_ACTIVE


def test_running_process_that_dies_is_restarted_with_backoff() -> None:
    s = ManualScheduler()
    host = FakeHost()
    host.alive[10] = True
    wd = _watchdog(host, s)
    events: List[WatchdogEvent] = []
    wd.on_watchdog_event(events.append)

    wd.start(10)
    assert wd.get_process_state() == ProcessState.running
    assert [e.type for e in events] == [E.monitoring_started, E.process_started]

    host.alive[10] = False
    s.advance(1.0)
    assert wd.get_process_state() == ProcessState.crashed
    assert wd.get_state().restart_attempts == 1
    assert wd.get_state().current_backoff_delay_ms == 1_000

    s.advance(1.0)
    assert host.spawned == [["/opt/kiosk/shell", "--kiosk"]]
    restarted = [e for e in events if e.type == E.process_restarted]
    assert restarted[0].pid == 501
    assert restarted[0].data == {"attempt": 1, "delay_ms": 1_000}

    s.advance(1.0)
    assert wd.get_process_state() == ProcessState.running
    assert wd.get_state().restart_attempts == 0
    assert wd.get_state().pid == 501


def test_failed_restarts_grow_backoff_and_stop_at_limit() -> None:
    s = ManualScheduler()
    host = FakeHost()
    host.spawn_ok = False
    wd = _watchdog(host, s, max_restart_attempts=3, max_backoff_delay_ms=60_000)
    events: List[WatchdogEvent] = []
    wd.on_watchdog_event(events.append)

    wd.start(99)
    assert wd.get_process_state() == ProcessState.stopped

    s.advance(60.0)
    failed = [e for e in events if e.type == E.restart_failed]
    assert [e.data["delay_ms"] for e in failed] == [1_000, 2_000, 4_000]
    assert len(host.spawned) == 3
    assert [e.type for e in events].count(E.max_restarts_reached) == 1


def test_state_change_events_are_emitted_once_per_transition() -> None:
    s = ManualScheduler()
    host = FakeHost()
    wd = _watchdog(host, s, auto_restart=False)
    events: List[WatchdogEvent] = []
    wd.on_watchdog_event(events.append)
    wd.start(77)
    s.advance(5.0)
    assert [e.type for e in events] == [E.monitoring_started, E.process_stopped]


def test_process_located_by_name() -> None:
    s = ManualScheduler()
    host = FakeHost()
    host.alive[321] = True
    wd = _watchdog(host, s, process_name="kiosk")
    wd.start()
    assert wd.get_state().pid == 321
    assert wd.get_process_state() == ProcessState.running


def test_unresponsive_process_is_terminated_and_restarted() -> None:
    s = ManualScheduler()
    host = FakeHost()
    host.alive[10] = True
    wd = _watchdog(host, s, restart_strategy="immediate")
    events: List[WatchdogEvent] = []
    wd.on_watchdog_event(events.append)
    wd.start(10)

    wd.handle_unresponsive()
    assert wd.get_process_state() == ProcessState.unresponsive
    assert host.terminated == [10]

    s.advance(0.0)
    assert len(host.spawned) == 1
    types = [e.type for e in events]
    assert types.index(E.process_unresponsive) < types.index(E.process_restarted)


def test_manual_restart_requires_executable() -> None:
    host = FakeHost()
    wd = _watchdog(host, ManualScheduler(), executable_path=None)
    with pytest.raises(ConfigurationError) as ei:
        wd.restart_process()
    assert str(ei.value) == errors.EXECUTABLE_REQUIRED


def test_manual_restart_bypasses_attempt_cap() -> None:
    s = ManualScheduler()
    host = FakeHost()
    host.spawn_ok = False
    wd = _watchdog(host, s, max_restart_attempts=1)
    wd.start(5)
    s.advance(30.0)
    assert len(host.spawned) == 1

    host.spawn_ok = True
    assert wd.restart_process() is True
    assert len(host.spawned) == 2
    assert wd.get_state().pid == 501


def test_stop_cancels_pending_restart() -> None:
    s = ManualScheduler()
    host = FakeHost()
    wd = _watchdog(host, s, restart_strategy="delayed", restart_delay_ms=5_000)
    events: List[WatchdogEvent] = []
    wd.on_watchdog_event(events.append)
    wd.start(5)
    wd.stop()
    wd.stop()
    s.advance(10.0)
    assert host.spawned == []
    assert [e.type for e in events].count(E.monitoring_stopped) == 1
    assert not wd.is_active()
