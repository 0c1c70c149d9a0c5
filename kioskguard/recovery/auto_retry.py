from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional

from kioskguard import errors
from kioskguard.models import (
    AutoRetryConfig,
    AutoRetryState,
    RecoveryAction,
    RecoveryEvent,
    RecoveryResult,
    RetryStrategy,
    merge_config,
)
from kioskguard.recovery.crash_handler import SurfaceRef, surface_key
from kioskguard.recovery.surface import UISurface
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import Scheduler, ThreadScheduler, TimerHandle

log = logging.getLogger(__name__)


def calculate_retry_delay(attempt: int, config: AutoRetryConfig) -> int:
    """Delay in ms before retry number `attempt` (0-based), capped at `max_delay_ms`."""
    initial = config.initial_delay_ms
    if config.strategy == RetryStrategy.fixed:
        delay = float(initial)
    elif config.strategy == RetryStrategy.linear:
        delay = float(initial * (attempt + 1))
    else:
        delay = initial * (config.backoff_multiplier ** attempt)
    return int(min(delay, config.max_delay_ms))


class AutoRetry:
    """
    Reloads a surface with a growing delay between attempts, up to `max_retries`.
    Attempts keep counting across calls until `reset_retry_state`.
    """

    def __init__(self, *, scheduler: Optional[Scheduler] = None) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._lock = threading.RLock()
        self._states: Dict[str, AutoRetryState] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._events: EventBus[RecoveryEvent] = EventBus("auto_retry")

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    def on_event(self, handler: Callable[[RecoveryEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def schedule_retry(
        self,
        surface: UISurface,
        config: AutoRetryConfig | Mapping[str, Any] | None = None,
    ) -> RecoveryResult:
        sid = surface_key(surface)
        with self._lock:
            existing = self._states.get(sid)
            if existing is not None and existing.retrying:
                log.warning("Auto retry already in progress for surface %s", sid)
                return RecoveryResult(success=False, error=errors.RETRY_IN_PROGRESS)

            base = existing.config if existing is not None else AutoRetryConfig()
            cfg = merge_config(base, config)
            state = existing or AutoRetryState(surface_id=sid)
            state.config = cfg
            self._states[sid] = state

            if state.current_attempt >= cfg.max_retries:
                state.retrying = False
                exhausted = True
            else:
                exhausted = False
                delay_ms = calculate_retry_delay(state.current_attempt, cfg)
                state.retrying = True
                state.next_delay_ms = delay_ms
                attempt = state.current_attempt
                self._timers[sid] = self._scheduler.call_later(
                    delay_ms / 1000.0,
                    lambda: self._execute(sid, surface),
                    name=f"auto_retry_{sid}",
                )

        if exhausted:
            log.error("Max retries (%d) exceeded for surface %s", cfg.max_retries, sid)
            self._events.emit(
                RecoveryEvent(
                    type="max-retries-exceeded",
                    surface_id=sid,
                    timestamp=self._now_ms(),
                    data={"max_retries": cfg.max_retries},
                )
            )
            return RecoveryResult(success=False, error=errors.MAX_RETRIES_EXCEEDED)

        log.info(
            "Scheduling retry attempt %d/%d for surface %s in %dms", attempt + 1, cfg.max_retries, sid, delay_ms
        )
        self._events.emit(
            RecoveryEvent(
                type="before-retry",
                surface_id=sid,
                timestamp=self._now_ms(),
                data={"attempt": attempt, "delay_ms": delay_ms},
            )
        )
        return RecoveryResult(success=True, action=RecoveryAction.reload)

    def cancel_retry(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            h = self._timers.pop(sid, None)
            if h is not None:
                h.cancel()
            state = self._states.get(sid)
            if state is not None:
                state.retrying = False
                state.next_delay_ms = None
        log.info("Cancelled auto retry for surface %s", sid)

    def is_retrying(self, surface: SurfaceRef) -> bool:
        with self._lock:
            state = self._states.get(surface_key(surface))
            return bool(state and state.retrying)

    def reset_retry_state(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is not None:
                state.current_attempt = 0
        log.info("Reset retry attempts for surface %s", sid)

    def update_config(self, surface: SurfaceRef, updates: AutoRetryConfig | Mapping[str, Any]) -> None:
        with self._lock:
            state = self._states.get(surface_key(surface))
            if state is not None:
                state.config = merge_config(state.config, updates)

    def get_state(self, surface: SurfaceRef) -> Optional[AutoRetryState]:
        with self._lock:
            state = self._states.get(surface_key(surface))
            return state.model_copy(deep=True) if state is not None else None

    def forget(self, surface: SurfaceRef) -> None:
        self.cancel_retry(surface)
        with self._lock:
            self._states.pop(surface_key(surface), None)

    def reset(self) -> None:
        with self._lock:
            for h in self._timers.values():
                h.cancel()
            self._timers.clear()
            self._states.clear()

    def _execute(self, sid: str, ui: UISurface) -> None:
        with self._lock:
            self._timers.pop(sid, None)
            state = self._states.get(sid)
            if state is None or not state.retrying:
                return

        ok = False
        try:
            if ui.is_destroyed():
                log.error("Cannot retry: surface %s is destroyed", sid)
            else:
                ui.reload()
                ok = True
        except Exception as e:
            log.error("Retry failed for surface %s: %s", sid, e)

        with self._lock:
            state = self._states.get(sid)
            if state is None:
                return
            state.retrying = False
            state.next_delay_ms = None
            if ok:
                state.current_attempt += 1
                state.total_retries += 1
                state.last_retry_time = self._now_ms()
            attempt = state.current_attempt

        if ok:
            log.info("Reloaded surface %s (retry %d)", sid, attempt)
            self._events.emit(
                RecoveryEvent(type="retry-success", surface_id=sid, timestamp=self._now_ms(), data={"attempt": attempt})
            )
        else:
            self._events.emit(RecoveryEvent(type="retry-failed", surface_id=sid, timestamp=self._now_ms()))
