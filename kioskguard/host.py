"""
In-process half of kioskguard, running inside the kiosk shell.

- every UI surface gets crash + blank-screen recovery; a blank screen schedules an auto-retry reload
- content updates go through the A/B updater; the active version is backed up into the rollback ledger
- a surface that exhausts its restarts shortly after a slot switch reverts the content
- heartbeats are posted to the external supervisor
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

import httpx

from kioskguard.liveness.heartbeat_sender import HeartbeatSender
from kioskguard.models import (
    HostEvent,
    RecoveryEvent,
    RecoveryState,
    RollbackEvent,
    UpdateResult,
    UpdaterEvent,
)
from kioskguard.recovery.monitor import RecoveryMonitor
from kioskguard.recovery.surface import UISurface
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler
from kioskguard.settings import Settings
from kioskguard.telemetry.audit import AuditLogger
from kioskguard.updater.business_updater import BusinessUpdater
from kioskguard.updater.rollback import RollbackManager

log = logging.getLogger(__name__)


class KioskHost:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        scheduler: Optional[Scheduler] = None,
        transport: httpx.BaseTransport | None = None,
        heartbeat_sender: HeartbeatSender | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.scheduler = scheduler or ThreadScheduler()
        self.recovery = RecoveryMonitor(scheduler=self.scheduler)
        self.updater = BusinessUpdater(self.settings.updater_config(), scheduler=self.scheduler, transport=transport)
        self.rollback = RollbackManager(self.settings.rollback_config(), clock=self.scheduler.now)
        self.heartbeat_sender = heartbeat_sender or HeartbeatSender(
            url=self.settings.heartbeat_supervisor_url,
            interval_ms=self.settings.heartbeat_interval_ms,
            channel=self.settings.heartbeat_channel,
            scheduler=self.scheduler,
            transport=transport,
        )
        self.audit = audit or AuditLogger(self.settings.audit_log_path)
        self.correlation_id = self.audit.new_correlation_id()
        self._lock = threading.Lock()
        self._surfaces: Dict[str, UISurface] = {}
        self._events: EventBus[HostEvent] = EventBus("host")
        self._update_task: Optional[PeriodicTask] = None

        self.recovery.on_recovery_event(self._on_recovery_event)
        self.updater.on_updater_event(self._on_updater_event)
        self.rollback.on_rollback_event(self._on_rollback_event)

    def on_host_event(self, handler: Callable[[HostEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self.updater.get_config().buffer_base_dir:
            self.updater.init()
        self.heartbeat_sender.start()
        if self.settings.updater_version_check_url:
            with self._lock:
                self._update_task = PeriodicTask(
                    self.scheduler,
                    self.settings.updater_check_interval_ms / 1000.0,
                    self.run_update_cycle,
                    name="host_update_cycle",
                )
                self._update_task.start()
        log.info("Kiosk host guard started")

    def stop(self) -> None:
        with self._lock:
            if self._update_task is not None:
                self._update_task.stop()
                self._update_task = None
            surfaces = list(self._surfaces.values())
        self.heartbeat_sender.stop()
        for s in surfaces:
            self.recovery.stop(s)
        log.info("Kiosk host guard stopped")

    def attach_surface(self, surface: UISurface) -> RecoveryState:
        with self._lock:
            self._surfaces[surface.surface_id] = surface
        return self.recovery.start(surface, self.settings.recovery_config())

    def detach_surface(self, surface: UISurface) -> None:
        with self._lock:
            self._surfaces.pop(surface.surface_id, None)
        self.recovery.surface_closed(surface)

    # ---------- updates ----------

    def apply_update(self) -> UpdateResult:
        """Back up the running content, switch slots, then back up the new content and reload surfaces."""
        before = self.updater.get_state()
        active_path = self.updater.get_active_slot_path()
        if before.current_version and active_path:
            backup = self.rollback.create_backup(active_path, before.current_version)
            if not backup.success:
                log.warning("Proceeding without backup of %s: %s", before.current_version, backup.error)

        res = self.updater.apply()
        if not res.success:
            return res

        new_path = self.updater.get_active_slot_path()
        if res.version and new_path:
            self.rollback.create_backup(new_path, res.version)
        self._reset_recovery_counters()
        self._reload_surfaces()
        return res

    def run_update_cycle(self) -> UpdateResult:
        res = self.updater.check_for_update()
        if not res.success or res.version is None:
            return res
        if not self.settings.updater_auto_download:
            return res
        res = self.updater.download()
        if not res.success or not self.settings.updater_auto_apply:
            return res
        return self.apply_update()

    # ---------- escalation ----------

    def _within_grace(self) -> bool:
        applied = self.updater.get_state().last_applied
        if applied is None:
            return False
        return (self.scheduler.now() - applied) * 1000.0 <= self.settings.post_update_grace_ms

    def _escalate(self, surface_id: str, reason: str) -> None:
        if self._within_grace():
            bad = self.updater.get_current_version()
            res = self.updater.revert()
            if not res.success:
                active_path = self.updater.get_active_slot_path()
                if active_path:
                    res = self.rollback.rollback_to_previous(active_path)
                    if res.success:
                        self.updater.reload_slots()
                        if bad:
                            self.updater.reject_version(bad)
            if res.success:
                log.warning("Content %s reverted to %s after %s on surface %s", bad, res.version, reason, surface_id)
                self._events.emit(
                    HostEvent(
                        type="content-reverted",
                        timestamp=self.scheduler.now(),
                        surface_id=surface_id,
                        reason=reason,
                        version=res.version,
                    )
                )
                self._reset_recovery_counters()
                self._reload_surfaces()
                return
            log.error("Could not revert content after %s: %s", reason, res.error)

        log.error("Recovery exhausted on surface %s (%s); escalating", surface_id, reason)
        self._events.emit(
            HostEvent(type="escalate", timestamp=self.scheduler.now(), surface_id=surface_id, reason=reason)
        )

    def _reset_recovery_counters(self) -> None:
        with self._lock:
            ids = list(self._surfaces)
        for sid in ids:
            self.recovery.crash_handler.clear_crash_history(sid)
            self.recovery.blank_detector.reset_blank_count(sid)
            self.recovery.auto_retry.reset_retry_state(sid)

    def _reload_surfaces(self) -> None:
        with self._lock:
            surfaces = list(self._surfaces.values())
        for s in surfaces:
            try:
                if not s.is_destroyed():
                    s.reload()
            except Exception as e:
                log.error("Failed to reload surface %s: %s", s.surface_id, e)

    # ---------- event wiring ----------

    def _audit(self, event_type: str, payload: dict) -> None:
        try:
            self.audit.write(self.correlation_id, event_type, payload, actor="host")
        except OSError as e:
            log.warning("Audit write failed for %s: %s", event_type, e)

    def _on_recovery_event(self, ev: RecoveryEvent) -> None:
        self._audit(f"recovery.{ev.type}", ev.model_dump(mode="json"))
        if ev.type == "blank-detected":
            with self._lock:
                surface = self._surfaces.get(ev.surface_id)
            if surface is not None:
                self.recovery.retry(surface)
        elif ev.type in ("max-restarts-exceeded", "max-retries-exceeded"):
            self._escalate(ev.surface_id, ev.type)

    def _on_updater_event(self, ev: UpdaterEvent) -> None:
        if ev.type == "download-progress":
            return
        self._audit(f"updater.{ev.type}", ev.model_dump(mode="json"))

    def _on_rollback_event(self, ev: RollbackEvent) -> None:
        self._audit(f"rollback.{ev.type}", ev.model_dump(mode="json"))
