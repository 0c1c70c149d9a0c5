from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional

from kioskguard.models import (
    BlankDetectionResult,
    BlankDetectorConfig,
    BlankDetectorState,
    BlankReason,
    RecoveryEvent,
    merge_config,
)
from kioskguard.recovery.crash_handler import SurfaceRef, call_hook, surface_key
from kioskguard.recovery.surface import UISurface, blank_detection_script
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler

log = logging.getLogger(__name__)


def normalize_probe_result(raw: Any, *, min_content_height: int, timestamp: int) -> BlankDetectionResult:
    """
    Turn a raw probe reply into a result. Anything malformed counts as blank
    with reason=error so a broken probe can never mask a white screen.
    """
    if not isinstance(raw, dict):
        return BlankDetectionResult(
            is_blank=True, reason=BlankReason.error, details="Malformed probe result", timestamp=timestamp
        )
    is_blank = bool(raw.get("isBlank", raw.get("is_blank", False)))
    height = raw.get("height")
    reason: Optional[BlankReason] = None
    try:
        if raw.get("reason"):
            reason = BlankReason(raw["reason"])
    except ValueError:
        reason = BlankReason.error
    if is_blank and reason is None:
        reason = BlankReason.error
    if not is_blank and isinstance(height, (int, float)) and height < min_content_height:
        is_blank, reason = True, BlankReason.no_content

    details = raw.get("error")
    if not details and height is not None:
        details = f"height: {height}"
    return BlankDetectionResult(
        is_blank=is_blank,
        reason=reason if is_blank else None,
        details=details,
        timestamp=timestamp,
    )


class BlankDetector:
    """
    Polls each registered surface with a content probe and reports a blank
    screen after `blank_threshold` consecutive blank results.
    The counter resets to 0 after each notification, so a permanently blank
    surface is reported again every `blank_threshold` polls.
    """

    def __init__(self, *, scheduler: Optional[Scheduler] = None) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._lock = threading.RLock()
        self._states: Dict[str, BlankDetectorState] = {}
        self._surfaces: Dict[str, UISurface] = {}
        self._tasks: Dict[str, PeriodicTask] = {}
        self._callbacks: Dict[str, Optional[Callable[[BlankDetectionResult], None]]] = {}
        self._events: EventBus[RecoveryEvent] = EventBus("blank_detector")

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    def on_event(self, handler: Callable[[RecoveryEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def start(
        self,
        surface: UISurface,
        config: BlankDetectorConfig | Mapping[str, Any] | None = None,
        *,
        on_blank_detected: Optional[Callable[[BlankDetectionResult], None]] = None,
    ) -> BlankDetectorState:
        sid = surface_key(surface)
        with self._lock:
            existing = self._states.get(sid)
            if existing is not None and existing.active:
                log.warning("Blank detection already active for surface %s", sid)
                return existing.model_copy(deep=True)

            cfg = merge_config(BlankDetectorConfig(), config)
            state = BlankDetectorState(surface_id=sid, active=True, config=cfg)
            self._states[sid] = state
            self._surfaces[sid] = surface
            self._callbacks[sid] = on_blank_detected
            task = PeriodicTask(
                self._scheduler,
                cfg.check_interval_ms / 1000.0,
                lambda: self._tick(sid),
                name=f"blank_check_{sid}",
            )
            self._tasks[sid] = task
            task.start()
            log.info("Started blank detection for surface %s (interval=%dms)", sid, cfg.check_interval_ms)
            return state.model_copy(deep=True)

    def stop(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            task = self._tasks.pop(sid, None)
            if task is not None:
                task.stop()
            state = self._states.get(sid)
            if state is not None:
                state.active = False
        log.info("Stopped blank detection for surface %s", sid)

    def forget(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        self.stop(sid)
        with self._lock:
            self._states.pop(sid, None)
            self._surfaces.pop(sid, None)
            self._callbacks.pop(sid, None)

    def check_now(self, surface: UISurface) -> BlankDetectionResult:
        """Probe once without touching the consecutive-blank counter."""
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            min_h = state.config.min_content_height if state is not None else BlankDetectorConfig().min_content_height
        return self._probe(surface, min_h)

    def update_config(self, surface: SurfaceRef, updates: BlankDetectorConfig | Mapping[str, Any]) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is None:
                return
            old_interval = state.config.check_interval_ms
            state.config = merge_config(state.config, updates)
            task = self._tasks.get(sid)
            if task is not None and state.config.check_interval_ms != old_interval:
                task.reschedule(state.config.check_interval_ms / 1000.0)
        log.info("Updated blank detector config for surface %s", sid)

    def reset_blank_count(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is not None:
                state.consecutive_blank_count = 0

    def get_last_result(self, surface: SurfaceRef) -> Optional[BlankDetectionResult]:
        state = self.get_state(surface)
        return state.last_result if state is not None else None

    def get_state(self, surface: SurfaceRef) -> Optional[BlankDetectorState]:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            return state.model_copy(deep=True) if state is not None else None

    def reset(self) -> None:
        with self._lock:
            for task in self._tasks.values():
                task.stop()
            self._tasks.clear()
            self._states.clear()
            self._surfaces.clear()
            self._callbacks.clear()

    def _probe(self, ui: UISurface, min_content_height: int) -> BlankDetectionResult:
        try:
            if ui.is_destroyed():
                return BlankDetectionResult(
                    is_blank=True, reason=BlankReason.error, details="Surface is destroyed", timestamp=self._now_ms()
                )
            raw = ui.execute_probe(blank_detection_script(min_content_height))
        except Exception as e:
            return BlankDetectionResult(
                is_blank=True, reason=BlankReason.error, details=str(e) or type(e).__name__, timestamp=self._now_ms()
            )
        return normalize_probe_result(raw, min_content_height=min_content_height, timestamp=self._now_ms())

    def _tick(self, sid: str) -> None:
        with self._lock:
            state = self._states.get(sid)
            ui = self._surfaces.get(sid)
            if state is None or not state.active or ui is None:
                return
            min_h = state.config.min_content_height

        result = self._probe(ui, min_h)

        fire = False
        with self._lock:
            state = self._states.get(sid)
            if state is None or not state.active:
                return
            state.last_result = result
            if result.is_blank:
                state.consecutive_blank_count += 1
                log.debug(
                    "Blank result %d/%d for surface %s (%s)",
                    state.consecutive_blank_count,
                    state.config.blank_threshold,
                    sid,
                    result.reason.value if result.reason else "unknown",
                )
                if state.consecutive_blank_count >= state.config.blank_threshold:
                    fire = True
                    count = state.consecutive_blank_count
                    state.consecutive_blank_count = 0
            else:
                if state.consecutive_blank_count > 0:
                    log.info("Surface %s has content again", sid)
                state.consecutive_blank_count = 0
            callback = self._callbacks.get(sid)

        if fire:
            log.warning("Blank screen detected on surface %s after %d consecutive checks", sid, count)
            self._events.emit(
                RecoveryEvent(
                    type="blank-detected",
                    surface_id=sid,
                    timestamp=result.timestamp,
                    blank=result,
                    data={"consecutive": count},
                )
            )
            call_hook("on_blank_detected", callback, result)
