from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional

from kioskguard.models import (
    CrashReason,
    RecoveryConfig,
    RecoveryEvent,
    RecoveryResult,
    RecoveryState,
    merge_config,
)
from kioskguard.recovery.auto_retry import AutoRetry
from kioskguard.recovery.blank_detector import BlankDetector
from kioskguard.recovery.crash_handler import CrashHandler, SurfaceRef, surface_key
from kioskguard.recovery.surface import UISurface
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import Scheduler, ThreadScheduler

log = logging.getLogger(__name__)


class RecoveryMonitor:
    """
    Crash + blank-screen recovery for every UI surface of the host.

    Owns one CrashHandler, one BlankDetector and one AutoRetry sharing a
    scheduler, and re-publishes all of their events on a single bus.
    Escalation policy (what to do on "max-restarts-exceeded") is left to subscribers.
    """

    def __init__(self, *, scheduler: Optional[Scheduler] = None) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self.crash_handler = CrashHandler(scheduler=self._scheduler)
        self.blank_detector = BlankDetector(scheduler=self._scheduler)
        self.auto_retry = AutoRetry(scheduler=self._scheduler)
        self._lock = threading.Lock()
        self._configs: Dict[str, RecoveryConfig] = {}
        self._events: EventBus[RecoveryEvent] = EventBus("recovery")
        self.crash_handler.on_event(self._events.emit)
        self.blank_detector.on_event(self._events.emit)
        self.auto_retry.on_event(self._events.emit)

    def on_recovery_event(self, handler: Callable[[RecoveryEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def start(
        self,
        surface: UISurface,
        config: RecoveryConfig | Mapping[str, Any] | None = None,
        *,
        on_crash: Optional[Callable[..., None]] = None,
        on_max_restarts_exceeded: Optional[Callable[..., None]] = None,
        on_blank_detected: Optional[Callable[..., None]] = None,
    ) -> RecoveryState:
        sid = surface_key(surface)
        with self._lock:
            if self.is_active(sid):
                log.warning("Recovery monitoring already active for surface %s", sid)
                return self._state_for(sid)
            cfg = merge_config(RecoveryConfig(), config)
            self._configs[sid] = cfg

        self.crash_handler.start(
            surface, cfg.crash, on_crash=on_crash, on_max_restarts_exceeded=on_max_restarts_exceeded
        )
        self.blank_detector.start(surface, cfg.blank, on_blank_detected=on_blank_detected)
        log.info("Recovery monitoring started for surface %s", sid)
        return self._state_for(sid)

    def stop(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        self.crash_handler.stop(sid)
        self.blank_detector.stop(sid)
        self.auto_retry.cancel_retry(sid)

    def surface_closed(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        self.crash_handler.forget(sid)
        self.blank_detector.forget(sid)
        self.auto_retry.forget(sid)
        with self._lock:
            self._configs.pop(sid, None)
        log.info("Surface %s closed; recovery state released", sid)

    def handle_crash(self, surface: SurfaceRef, reason: CrashReason | str, exit_code: int = 0) -> RecoveryResult:
        return self.crash_handler.handle_crash(surface, reason, exit_code)

    def trigger_crash_recovery(
        self, surface: SurfaceRef, reason: CrashReason | str = CrashReason.crashed
    ) -> RecoveryResult:
        return self.crash_handler.trigger_crash_recovery(surface, reason)

    def retry(self, surface: UISurface) -> RecoveryResult:
        sid = surface_key(surface)
        with self._lock:
            cfg = self._configs.get(sid)
        return self.auto_retry.schedule_retry(surface, cfg.retry if cfg is not None else None)

    def is_active(self, surface: SurfaceRef) -> bool:
        state = self.crash_handler.get_state(surface)
        return bool(state and state.active)

    def get_state(self, surface: SurfaceRef) -> Optional[RecoveryState]:
        sid = surface_key(surface)
        with self._lock:
            if sid not in self._configs:
                return None
            return self._state_for(sid)

    def surfaces(self) -> list[str]:
        with self._lock:
            return list(self._configs)

    def reset(self) -> None:
        self.crash_handler.reset()
        self.blank_detector.reset()
        self.auto_retry.reset()
        with self._lock:
            self._configs.clear()

    def _state_for(self, sid: str) -> RecoveryState:
        crash = self.crash_handler.get_state(sid)
        blank = self.blank_detector.get_state(sid)
        cfg = self._configs.get(sid) or RecoveryConfig()
        return RecoveryState(
            surface_id=sid,
            active=bool(crash and crash.active),
            consecutive_blank_count=blank.consecutive_blank_count if blank is not None else 0,
            crashes=list(crash.crashes) if crash is not None else [],
            max_restarts_exceeded=bool(crash and crash.max_restarts_exceeded),
            config=cfg.model_copy(deep=True),
        )
