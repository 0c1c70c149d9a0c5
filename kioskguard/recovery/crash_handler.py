"""
Per-surface crash bookkeeping with a bounded auto-reload policy.

Every death notification is recorded; restartable crashes (crashed, oom,
abnormal-exit) inside the sliding `restart_window_ms` are counted, and once the
count exceeds `max_restarts` the surface is flagged and further automatic
reloads are suppressed until `clear_crash_history` or `reset_restart_limit`.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from kioskguard import errors
from kioskguard.errors import SurfaceRequiredError
from kioskguard.models import (
    CrashEvent,
    CrashHandlerConfig,
    CrashHandlerState,
    CrashReason,
    RecoveryAction,
    RecoveryEvent,
    RecoveryResult,
    is_restartable,
    merge_config,
)
from kioskguard.recovery.surface import UISurface
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import Scheduler, ThreadScheduler, TimerHandle

log = logging.getLogger(__name__)

SurfaceRef = Union[UISurface, str]


def surface_key(surface: SurfaceRef | None) -> str:
    if surface is None:
        raise SurfaceRequiredError(errors.SURFACE_REQUIRED)
    if isinstance(surface, str):
        return surface
    return str(surface.surface_id)


def call_hook(name: str, fn: Optional[Callable[..., Any]], *args: Any) -> None:
    if fn is None:
        return
    try:
        fn(*args)
    except Exception:
        log.warning("Error in %s callback", name, exc_info=True)


@dataclass
class _CrashHooks:
    on_crash: Optional[Callable[[CrashEvent], None]] = None
    on_max_restarts_exceeded: Optional[Callable[[List[CrashEvent]], None]] = None


class CrashHandler:
    def __init__(self, *, scheduler: Optional[Scheduler] = None) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._lock = threading.RLock()
        self._states: Dict[str, CrashHandlerState] = {}
        self._surfaces: Dict[str, UISurface] = {}
        self._hooks: Dict[str, _CrashHooks] = {}
        self._reloads: Dict[str, Dict[int, TimerHandle]] = {}
        self._reload_seq = itertools.count(1)
        self._events: EventBus[RecoveryEvent] = EventBus("crash_handler")

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    def on_event(self, handler: Callable[[RecoveryEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    def start(
        self,
        surface: UISurface,
        config: CrashHandlerConfig | Mapping[str, Any] | None = None,
        *,
        on_crash: Optional[Callable[[CrashEvent], None]] = None,
        on_max_restarts_exceeded: Optional[Callable[[List[CrashEvent]], None]] = None,
    ) -> CrashHandlerState:
        sid = surface_key(surface)
        with self._lock:
            existing = self._states.get(sid)
            if existing is not None and existing.active:
                log.warning("Crash monitoring already active for surface %s", sid)
                return existing.model_copy(deep=True)

            cfg = merge_config(CrashHandlerConfig(), config)
            if existing is None:
                state = CrashHandlerState(surface_id=sid, active=True, config=cfg)
            else:
                # Restart after stop keeps the crash history.
                state = existing.model_copy(update={"active": True, "config": cfg})
            self._states[sid] = state
            self._surfaces[sid] = surface
            self._hooks[sid] = _CrashHooks(on_crash=on_crash, on_max_restarts_exceeded=on_max_restarts_exceeded)
            log.info("Started crash monitoring for surface %s", sid)
            return state.model_copy(deep=True)

    def stop(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is None:
                return
            state.active = False
            self._cancel_reloads(sid)
        log.info("Stopped crash monitoring for surface %s", sid)

    def forget(self, surface: SurfaceRef) -> None:
        """Drop all state for a surface that has been closed."""
        sid = surface_key(surface)
        with self._lock:
            self._cancel_reloads(sid)
            self._states.pop(sid, None)
            self._surfaces.pop(sid, None)
            self._hooks.pop(sid, None)

    def handle_crash(
        self,
        surface: SurfaceRef,
        reason: CrashReason | str,
        exit_code: int = 0,
    ) -> RecoveryResult:
        sid = surface_key(surface)
        reason = CrashReason(reason)
        with self._lock:
            state = self._states.get(sid)
            if state is None or not state.active:
                return RecoveryResult(success=False, error=errors.MONITORING_NOT_ACTIVE)

            ui = self._surfaces.get(sid)
            url = None
            if ui is not None:
                try:
                    url = None if ui.is_destroyed() else ui.current_url()
                except Exception:
                    url = None

            now = self._now_ms()
            event = CrashEvent(surface_id=sid, reason=reason, exit_code=int(exit_code), timestamp=now, url=url)
            state.crashes.append(event)
            cutoff = now - state.config.restart_window_ms
            state.crashes = [c for c in state.crashes if c.timestamp > cutoff]
            hooks = self._hooks.get(sid) or _CrashHooks()
            cfg = state.config

            exceeded = False
            restartable = is_restartable(reason)
            if restartable:
                count = sum(1 for c in state.crashes if is_restartable(c.reason))
                if count > cfg.max_restarts or state.max_restarts_exceeded:
                    state.max_restarts_exceeded = True
                    exceeded = True
            recent = list(state.crashes)

        log.error("Surface %s crashed: reason=%s exit_code=%s", sid, reason.value, exit_code)
        self._events.emit(RecoveryEvent(type="crash", surface_id=sid, timestamp=now, crash=event))
        call_hook("on_crash", hooks.on_crash, event)

        if exceeded:
            log.error("Max restarts (%d) exceeded for surface %s", cfg.max_restarts, sid)
            self._events.emit(
                RecoveryEvent(
                    type="max-restarts-exceeded",
                    surface_id=sid,
                    timestamp=now,
                    crash=event,
                    data={"crash_count": len(recent), "max_restarts": cfg.max_restarts},
                )
            )
            call_hook("on_max_restarts_exceeded", hooks.on_max_restarts_exceeded, recent)
            return RecoveryResult(success=False, error=errors.MAX_RESTARTS_EXCEEDED)

        if not cfg.auto_restart:
            return RecoveryResult(success=True, action=RecoveryAction.none)
        if not restartable:
            log.info("Crash reason %s is not restartable; leaving surface %s as is", reason.value, sid)
            return RecoveryResult(success=True, action=RecoveryAction.none)

        with self._lock:
            seq = next(self._reload_seq)
            h = self._scheduler.call_later(
                cfg.restart_delay_ms / 1000.0,
                lambda: self._reload(sid, seq),
                name=f"crash_reload_{sid}",
            )
            self._reloads.setdefault(sid, {})[seq] = h
        log.info("Scheduled reload of surface %s in %dms", sid, cfg.restart_delay_ms)
        return RecoveryResult(success=True, action=RecoveryAction.reload)

    def trigger_crash_recovery(
        self, surface: SurfaceRef, reason: CrashReason | str = CrashReason.crashed
    ) -> RecoveryResult:
        return self.handle_crash(surface, reason, 1)

    def get_state(self, surface: SurfaceRef) -> Optional[CrashHandlerState]:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            return state.model_copy(deep=True) if state is not None else None

    def get_recent_crashes(self, surface: SurfaceRef) -> List[CrashEvent]:
        state = self.get_state(surface)
        return list(state.crashes) if state is not None else []

    def clear_crash_history(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is None:
                return
            state.crashes = []
            state.max_restarts_exceeded = False
        log.info("Cleared crash history for surface %s", sid)

    def reset_restart_limit(self, surface: SurfaceRef) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is not None:
                state.max_restarts_exceeded = False

    def update_config(self, surface: SurfaceRef, updates: CrashHandlerConfig | Mapping[str, Any]) -> None:
        sid = surface_key(surface)
        with self._lock:
            state = self._states.get(sid)
            if state is None:
                return
            state.config = merge_config(state.config, updates)
        log.info("Updated crash handler config for surface %s", sid)

    def reset(self) -> None:
        with self._lock:
            for sid in list(self._reloads):
                self._cancel_reloads(sid)
            self._states.clear()
            self._surfaces.clear()
            self._hooks.clear()

    def pending_reloads(self, surface: SurfaceRef) -> int:
        with self._lock:
            return len(self._reloads.get(surface_key(surface), {}))

    def _cancel_reloads(self, sid: str) -> None:
        for h in self._reloads.pop(sid, {}).values():
            h.cancel()

    def _reload(self, sid: str, seq: int) -> None:
        with self._lock:
            state = self._states.get(sid)
            ui = self._surfaces.get(sid)
            self._reloads.get(sid, {}).pop(seq, None)
            if state is None or not state.active or ui is None:
                return
        try:
            if ui.is_destroyed():
                log.warning("Surface %s is destroyed; skipping reload", sid)
                return
            ui.reload()
        except Exception as e:
            log.error("%s %s: %s", errors.RELOAD_FAILED, sid, e)
            return
        log.info("Reloaded surface %s after crash", sid)
        self._events.emit(RecoveryEvent(type="surface-reloaded", surface_id=sid, timestamp=self._now_ms()))
