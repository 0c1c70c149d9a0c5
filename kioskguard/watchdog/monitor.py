"""
External process watchdog.

Polls the liveness of the kiosk host process and restarts it according to the
configured strategy. State transitions:

    unknown -> running                  liveness confirmed
    running | unresponsive -> crashed   liveness lost after being confirmed
    unknown -> stopped                  never confirmed running
    * -> unresponsive                   reported by the heartbeat monitor

Each transition emits exactly one event. A confirmed-running observation resets
`restart_attempts` and the backoff sequence.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from kioskguard import errors
from kioskguard.errors import AlreadyActiveError, ConfigurationError
from kioskguard.liveness.process import (
    LivenessProbe,
    ProcessFinder,
    ProcessSpawner,
    ProcessTerminator,
    find_process_by_name,
    is_process_running,
    spawn_process,
    terminate_process,
)
from kioskguard.models import (
    MonitorConfig,
    MonitorState,
    ProcessState,
    RestartStrategy,
    WatchdogEvent,
    WatchdogEventType,
    merge_config,
)
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler, TimerHandle
from kioskguard.watchdog.backoff import RestartBackoff

log = logging.getLogger(__name__)

_TRANSITION_EVENTS = {
    ProcessState.running: WatchdogEventType.process_started,
    ProcessState.stopped: WatchdogEventType.process_stopped,
    ProcessState.crashed: WatchdogEventType.process_crashed,
    ProcessState.unresponsive: WatchdogEventType.process_unresponsive,
}


class ProcessWatchdog:
    def __init__(
        self,
        config: MonitorConfig | Mapping[str, Any] | None = None,
        *,
        scheduler: Optional[Scheduler] = None,
        liveness: LivenessProbe = is_process_running,
        spawner: ProcessSpawner = spawn_process,
        terminator: ProcessTerminator = terminate_process,
        process_finder: ProcessFinder = find_process_by_name,
    ) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._liveness = liveness
        self._spawner = spawner
        self._terminator = terminator
        self._finder = process_finder
        self._lock = threading.RLock()
        self._events: EventBus[WatchdogEvent] = EventBus("watchdog")
        self._config = merge_config(MonitorConfig(), config)
        self._state = MonitorState(pid=self._config.pid)
        self._backoff = self._make_backoff()
        self._task: Optional[PeriodicTask] = None
        self._restart_timer: Optional[TimerHandle] = None
        self._exhausted = False

    def _make_backoff(self) -> RestartBackoff:
        c = self._config
        return RestartBackoff(
            c.restart_strategy,
            restart_delay_ms=c.restart_delay_ms,
            max_backoff_delay_ms=c.max_backoff_delay_ms,
        )

    # ---------- configuration ----------

    def init(self, config: MonitorConfig | Mapping[str, Any] | None = None) -> None:
        """Replace the configuration with defaults merged with `config`."""
        with self._lock:
            self._config = merge_config(MonitorConfig(), config)
            if self._config.pid is not None:
                self._state.pid = self._config.pid
            self._backoff = self._make_backoff()
            if self._task is not None:
                self._task.reschedule(self._config.check_interval_ms / 1000.0)
        log.info("Watchdog configured (strategy=%s)", self._config.restart_strategy.value)

    def get_config(self) -> MonitorConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    # ---------- lifecycle ----------

    def start(self, pid: Optional[int] = None) -> None:
        if pid is not None and pid <= 0:
            raise ConfigurationError(errors.INVALID_PID)
        with self._lock:
            if self._state.active:
                raise AlreadyActiveError(errors.WATCHDOG_ALREADY_ACTIVE)
            if pid is not None:
                self._state.pid = pid
            self._state.active = True
            self._state.process_state = ProcessState.unknown
            self._state.restart_attempts = 0
            self._backoff.reset()
            self._state.current_backoff_delay_ms = self._backoff.current_delay_ms
            self._exhausted = False
            current_pid = self._state.pid
            self._task = PeriodicTask(
                self._scheduler,
                self._config.check_interval_ms / 1000.0,
                self.check_process,
                name="watchdog_check",
            )
        log.info("Process monitoring started (pid=%s)", current_pid)
        self._emit(WatchdogEventType.monitoring_started, current_pid)
        self.check_process()
        with self._lock:
            if self._state.active and self._task is not None:
                self._task.start()

    def stop(self) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state.active = False
            if self._task is not None:
                self._task.stop()
                self._task = None
            if self._restart_timer is not None:
                self._restart_timer.cancel()
                self._restart_timer = None
            pid = self._state.pid
        log.info("Process monitoring stopped")
        self._emit(WatchdogEventType.monitoring_stopped, pid)

    def reset(self) -> None:
        self.stop()
        with self._lock:
            self._state = MonitorState(pid=self._config.pid)
            self._backoff.reset()
            self._exhausted = False

    # ---------- observation ----------

    def check_process(self) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state.last_check = self._scheduler.now()
            pid = self._state.pid
            name = self._config.process_name

        if pid is None and name:
            pid = self._finder(name)
            if pid is not None:
                with self._lock:
                    self._state.pid = pid

        alive = bool(pid) and self._liveness(pid)

        pending: List[WatchdogEvent] = []
        restart = False
        with self._lock:
            if not self._state.active:
                return
            if alive:
                pending += self._transition(ProcessState.running)
                if self._state.restart_attempts or self._exhausted:
                    log.info("Process is running (pid=%s); restart counters reset", pid)
                self._state.restart_attempts = 0
                self._exhausted = False
                self._backoff.reset()
                self._state.current_backoff_delay_ms = self._backoff.current_delay_ms
            else:
                current = self._state.process_state
                if current in (ProcessState.running, ProcessState.unresponsive):
                    pending += self._transition(ProcessState.crashed)
                elif current == ProcessState.unknown:
                    pending += self._transition(ProcessState.stopped)
                restart = self._config.auto_restart

        for ev in pending:
            self._events.emit(ev)
        if restart:
            self._schedule_restart()

    def handle_unresponsive(self) -> None:
        """Called when heartbeats stop: mark unresponsive and, if enabled, kill and restart the host."""
        with self._lock:
            if not self._state.active:
                return
            pending = self._transition(ProcessState.unresponsive)
            pid = self._state.pid
            cfg = self._config
        for ev in pending:
            self._events.emit(ev)

        if not (cfg.restart_on_unresponsive and cfg.auto_restart and cfg.executable_path):
            return
        if pid:
            log.warning("Terminating unresponsive process %s", pid)
            if not self._terminator(pid):
                log.error("Could not terminate unresponsive process %s", pid)
                return
        self._schedule_restart()

    def restart_process(self) -> bool:
        """Manual restart, bypassing the delay and the attempt cap."""
        with self._lock:
            if not self._config.executable_path:
                raise ConfigurationError(errors.EXECUTABLE_REQUIRED)
            if self._restart_timer is not None:
                self._restart_timer.cancel()
                self._restart_timer = None
            self._state.restart_attempts += 1
            attempt = self._state.restart_attempts
        log.info("Restarting process (manual, attempt %d)", attempt)
        return self._restart_now(attempt, 0, manual=True)

    # ---------- queries ----------

    def get_state(self) -> MonitorState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_process_state(self) -> ProcessState:
        with self._lock:
            return self._state.process_state

    def is_active(self) -> bool:
        with self._lock:
            return self._state.active

    def on_watchdog_event(self, handler: Callable[[WatchdogEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def off_watchdog_event(self, handler: Callable[[WatchdogEvent], None]) -> None:
        self._events.unsubscribe(handler)

    # ---------- internals ----------

    def _event(self, typ: WatchdogEventType, pid: Optional[int], data: Optional[Dict[str, Any]] = None) -> WatchdogEvent:
        return WatchdogEvent(type=typ, timestamp=self._scheduler.now(), pid=pid, data=data or {})

    def _emit(self, typ: WatchdogEventType, pid: Optional[int], data: Optional[Dict[str, Any]] = None) -> None:
        self._events.emit(self._event(typ, pid, data))

    def _transition(self, target: ProcessState) -> List[WatchdogEvent]:
        # caller holds the lock
        previous = self._state.process_state
        if previous == target:
            return []
        self._state.process_state = target
        self._state.last_state_change = self._scheduler.now()
        level = logging.INFO if target == ProcessState.running else logging.WARNING
        log.log(level, "Process state %s -> %s (pid=%s)", previous.value, target.value, self._state.pid)
        return [self._event(_TRANSITION_EVENTS[target], self._state.pid, {"previous": previous.value})]

    def _schedule_restart(self) -> None:
        with self._lock:
            cfg = self._config
            if not self._state.active or self._restart_timer is not None:
                return
            if not cfg.auto_restart or cfg.restart_strategy == RestartStrategy.none:
                return
            if not cfg.executable_path:
                log.debug("No executable path configured; not restarting")
                return
            if cfg.max_restart_attempts > 0 and self._state.restart_attempts >= cfg.max_restart_attempts:
                if self._exhausted:
                    return
                self._exhausted = True
                attempts = self._state.restart_attempts
                exhausted_event = self._event(
                    WatchdogEventType.max_restarts_reached, self._state.pid, {"attempts": attempts}
                )
            else:
                exhausted_event = None
                delay_ms = self._backoff.next_delay_ms()
                if delay_ms < 0:
                    return
                self._state.restart_attempts += 1
                attempt = self._state.restart_attempts
                self._state.current_backoff_delay_ms = delay_ms
                self._restart_timer = self._scheduler.call_later(
                    delay_ms / 1000.0,
                    lambda: self._restart_now(attempt, delay_ms),
                    name="watchdog_restart",
                )

        if exhausted_event is not None:
            log.error("%s (%d)", errors.MAX_RESTARTS_REACHED, attempts)
            self._events.emit(exhausted_event)
            return
        log.info("Restarting process (attempt %d, delay: %dms)", attempt, delay_ms)

    def _restart_now(self, attempt: int, delay_ms: int, *, manual: bool = False) -> bool:
        with self._lock:
            self._restart_timer = None
            if not manual and not self._state.active:
                return False
            cfg = self._config

        try:
            new_pid = self._spawner(cfg.executable_path or "", list(cfg.executable_args), cfg.working_directory)
        except Exception as e:
            log.error("%s: %s", errors.RESTART_FAILED, e)
            new_pid = None

        with self._lock:
            if new_pid:
                self._state.pid = new_pid
                self._backoff.reset()
                ev = self._event(
                    WatchdogEventType.process_restarted, new_pid, {"attempt": attempt, "delay_ms": delay_ms}
                )
            else:
                ev = self._event(
                    WatchdogEventType.restart_failed, self._state.pid, {"attempt": attempt, "delay_ms": delay_ms}
                )

        if new_pid:
            log.info("Process restarted successfully (pid=%s)", new_pid)
        else:
            log.error("%s (attempt %d)", errors.RESTART_FAILED, attempt)
        self._events.emit(ev)
        return bool(new_pid)
