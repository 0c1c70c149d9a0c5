from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Mapping, Optional

from kioskguard import errors
from kioskguard.errors import NotActiveError
from kioskguard.models import (
    HeartbeatConfig,
    HeartbeatState,
    WatchdogEvent,
    WatchdogEventType,
    merge_config,
)
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler

log = logging.getLogger(__name__)


class HeartbeatMonitor:
    """
    Tracks heartbeat arrivals from the host process.

    Every `interval_ms` a check counts a miss when nothing has ever arrived or
    the last heartbeat is older than `timeout_ms`. The process is responsive
    while `missed_count < missed_threshold`; the drop to unresponsive emits
    `process-unresponsive` exactly once per transition.
    """

    def __init__(
        self,
        config: HeartbeatConfig | Mapping[str, Any] | None = None,
        *,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._lock = threading.RLock()
        self._config = merge_config(HeartbeatConfig(), config)
        self._state = HeartbeatState()
        self._task: Optional[PeriodicTask] = None
        self._events: EventBus[WatchdogEvent] = EventBus("heartbeat")
        self._on_heartbeat: EventBus[float] = EventBus("heartbeat_callback")

    def init(self, config: HeartbeatConfig | Mapping[str, Any] | None = None) -> None:
        with self._lock:
            self._config = merge_config(HeartbeatConfig(), config)
            if self._task is not None:
                self._task.reschedule(self._config.interval_ms / 1000.0)
        log.info(
            "Heartbeat configured (interval=%dms timeout=%dms threshold=%d)",
            self._config.interval_ms,
            self._config.timeout_ms,
            self._config.missed_threshold,
        )

    def get_config(self) -> HeartbeatConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def start(self) -> None:
        with self._lock:
            if self._state.active:
                log.warning("Heartbeat monitoring already active")
                return
            self._state = HeartbeatState(active=True)
            self._task = PeriodicTask(
                self._scheduler, self._config.interval_ms / 1000.0, self._check, name="heartbeat_check"
            )
            self._task.start()
        log.info("Heartbeat monitoring started")

    def stop(self) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state.active = False
            if self._task is not None:
                self._task.stop()
                self._task = None
        log.info("Heartbeat monitoring stopped")

    def restart_tracking(self) -> None:
        """Forget the previous process' heartbeats, e.g. after the watchdog restarted it."""
        with self._lock:
            if not self._state.active:
                return
            self._state.last_heartbeat = None
            self._state.missed_count = 0
            self._state.responsive = True
            if self._task is not None:
                self._task.stop()
                self._task.start()

    def reset(self) -> None:
        self.stop()
        with self._lock:
            self._state = HeartbeatState()
            self._config = HeartbeatConfig()

    def receive(self) -> None:
        with self._lock:
            if not self._state.active:
                log.warning("Heartbeat received while monitoring is not active")
                return
            now = self._scheduler.now()
            was_responsive = self._state.responsive
            self._state.last_heartbeat = now
            self._state.missed_count = 0
            self._state.responsive = True
        if not was_responsive:
            log.info("Process is responsive again")
        log.debug("Heartbeat received")
        self._events.emit(WatchdogEvent(type=WatchdogEventType.heartbeat_received, timestamp=now))
        self._on_heartbeat.emit(now)

    def trigger_check(self) -> None:
        with self._lock:
            if not self._state.active:
                raise NotActiveError(errors.HEARTBEAT_NOT_ACTIVE)
        self._check()

    def on_heartbeat(self, callback: Callable[[float], None]) -> Callable[[], None]:
        return self._on_heartbeat.subscribe(callback)

    def on_heartbeat_event(self, handler: Callable[[WatchdogEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def get_state(self) -> HeartbeatState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def is_responsive(self) -> bool:
        with self._lock:
            return self._state.responsive

    def time_since_last_heartbeat(self) -> Optional[float]:
        """Seconds since the last heartbeat, or None when none has arrived."""
        with self._lock:
            if self._state.last_heartbeat is None:
                return None
            return self._scheduler.now() - self._state.last_heartbeat

    def _check(self) -> None:
        pending: List[WatchdogEvent] = []
        with self._lock:
            if not self._state.active:
                return
            now = self._scheduler.now()
            last = self._state.last_heartbeat
            timeout_s = self._config.timeout_ms / 1000.0
            if last is None or (now - last) > timeout_s:
                self._state.missed_count += 1
                missed = self._state.missed_count
                log.warning("Heartbeat missed (%d/%d)", missed, self._config.missed_threshold)
                pending.append(
                    WatchdogEvent(
                        type=WatchdogEventType.heartbeat_missed,
                        timestamp=now,
                        data={"missed_count": missed, "last_heartbeat": last},
                    )
                )
            elif self._state.missed_count > 0:
                self._state.missed_count = 0
                log.info("Heartbeat restored")

            was_responsive = self._state.responsive
            self._state.responsive = self._state.missed_count < self._config.missed_threshold
            if was_responsive and not self._state.responsive:
                log.error("Process is unresponsive (%d missed heartbeats)", self._state.missed_count)
                pending.append(
                    WatchdogEvent(
                        type=WatchdogEventType.process_unresponsive,
                        timestamp=now,
                        data={"missed_count": self._state.missed_count},
                    )
                )
        for ev in pending:
            self._events.emit(ev)
