"""
External supervisor process for the kiosk host.

Wires the process watchdog to the heartbeat monitor:
- sustained missed heartbeats -> watchdog.handle_unresponsive() (kill + restart)
- watchdog restarted the host -> heartbeat tracking restarts after a grace period

Run with:
    python -m kioskguard.service.supervisor --exe /opt/kiosk/kiosk-shell --pid 1234
"""

from __future__ import annotations

import argparse
import json
import logging
import threading
from typing import Any, Dict, Optional

from kioskguard.liveness.heartbeat_protocol import (
    HEARTBEAT_PING,
    HEARTBEAT_PONG,
    STATUS_REQUEST,
    HeartbeatMessage,
    create_heartbeat_handler,
)
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
from kioskguard.models import WatchdogEvent, WatchdogEventType
from kioskguard.runtime.timers import Scheduler, ThreadScheduler, TimerHandle
from kioskguard.settings import Settings
from kioskguard.telemetry.audit import AuditLogger
from kioskguard.telemetry.remote import RemoteEventEmitter
from kioskguard.watchdog.heartbeat import HeartbeatMonitor
from kioskguard.watchdog.monitor import ProcessWatchdog

log = logging.getLogger(__name__)

# Per-heartbeat events are too frequent for the audit trail.
_UNAUDITED = {WatchdogEventType.heartbeat_received}


class Supervisor:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        scheduler: Optional[Scheduler] = None,
        liveness: LivenessProbe = is_process_running,
        spawner: ProcessSpawner = spawn_process,
        terminator: ProcessTerminator = terminate_process,
        process_finder: ProcessFinder = find_process_by_name,
        audit: AuditLogger | None = None,
        remote: RemoteEventEmitter | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.scheduler = scheduler or ThreadScheduler()
        self.watchdog = ProcessWatchdog(
            self.settings.monitor_config(),
            scheduler=self.scheduler,
            liveness=liveness,
            spawner=spawner,
            terminator=terminator,
            process_finder=process_finder,
        )
        self.heartbeat = HeartbeatMonitor(self.settings.heartbeat_config(), scheduler=self.scheduler)
        self.heartbeat_handler = create_heartbeat_handler(self.heartbeat)
        self.audit = audit or AuditLogger(self.settings.audit_log_path)
        self.remote = remote or RemoteEventEmitter(
            webhook_urls=self.settings.remote_webhook_urls(),
            device_id=self.settings.device_id,
            event_types=self.settings.remote_event_types() or None,
        )
        self.correlation_id = self.audit.new_correlation_id()
        self._lock = threading.Lock()
        self._grace_timer: Optional[TimerHandle] = None
        self._running = False

        self.watchdog.on_watchdog_event(self._on_watchdog_event)
        self.heartbeat.on_heartbeat_event(self._on_heartbeat_event)

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def start(self, pid: Optional[int] = None) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self.remote.start()
        self.audit.write(self.correlation_id, "supervisor.started", {"pid": pid}, actor="supervisor")
        self.watchdog.start(pid)
        self._start_heartbeat_after_grace()

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            if self._grace_timer is not None:
                self._grace_timer.cancel()
                self._grace_timer = None
        self.heartbeat.stop()
        self.watchdog.stop()
        self.audit.write(self.correlation_id, "supervisor.stopped", {}, actor="supervisor")
        self.remote.stop()

    def handle_message(self, message: HeartbeatMessage) -> Optional[HeartbeatMessage]:
        """Dispatch one message from the out-of-band channel; returns the reply, if any."""
        if message.type == HEARTBEAT_PING:
            return self.heartbeat_handler.handle_ping()
        if message.type == HEARTBEAT_PONG:
            self.heartbeat_handler.handle_pong()
            return None
        if message.type == STATUS_REQUEST:
            return HeartbeatMessage(type="status:response", pid=self.watchdog.get_state().pid, channel=message.channel)
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "watchdog": self.watchdog.get_state().model_dump(mode="json"),
            "heartbeat": self.heartbeat.get_state().model_dump(mode="json"),
        }

    def _start_heartbeat_after_grace(self) -> None:
        grace_s = max(0, self.settings.heartbeat_startup_grace_ms) / 1000.0
        with self._lock:
            if self._grace_timer is not None:
                self._grace_timer.cancel()
                self._grace_timer = None
            if grace_s <= 0:
                start_now = True
            else:
                start_now = False
                self._grace_timer = self.scheduler.call_later(grace_s, self._grace_elapsed, name="heartbeat_grace")
        if start_now:
            self.heartbeat.start()

    def _grace_elapsed(self) -> None:
        with self._lock:
            self._grace_timer = None
            if not self._running:
                return
        self.heartbeat.start()

    def _record(self, ev: WatchdogEvent, prefix: str) -> None:
        if ev.type in _UNAUDITED:
            return
        event_type = f"{prefix}.{ev.type.value}"
        payload = ev.model_dump(mode="json")
        try:
            self.audit.write(self.correlation_id, event_type, payload, actor="supervisor")
        except OSError as e:
            log.warning("Audit write failed for %s: %s", event_type, e)
        self.remote.emit(event_type, payload, correlation_id=self.correlation_id)

    def _on_watchdog_event(self, ev: WatchdogEvent) -> None:
        self._record(ev, "watchdog")
        if ev.type == WatchdogEventType.process_restarted and self.running:
            # The new process has its own boot time before it starts sending.
            self.heartbeat.stop()
            self._start_heartbeat_after_grace()

    def _on_heartbeat_event(self, ev: WatchdogEvent) -> None:
        self._record(ev, "heartbeat")
        if ev.type == WatchdogEventType.process_unresponsive:
            self.watchdog.handle_unresponsive()


def main() -> None:
    ap = argparse.ArgumentParser(description="Kiosk supervisor: process watchdog + heartbeat monitor")
    ap.add_argument("--pid", type=int, default=None, help="PID of an already running kiosk host")
    ap.add_argument("--process-name", default=None, help="Find the host by executable name")
    ap.add_argument("--exe", default=None, help="Executable used to (re)start the host")
    ap.add_argument("--arg", action="append", default=None, help="Argument for --exe (repeatable)")
    ap.add_argument("--cwd", default=None)
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    args = ap.parse_args()

    import uvicorn

    from kioskguard.service.app import create_app
    from kioskguard.telemetry.logging_ import setup_logging

    overrides: Dict[str, Any] = {}
    if args.process_name:
        overrides["watchdog_process_name"] = args.process_name
    if args.exe:
        overrides["watchdog_executable_path"] = args.exe
    if args.arg:
        overrides["watchdog_executable_args_json"] = json.dumps(args.arg)
    if args.cwd:
        overrides["watchdog_working_directory"] = args.cwd
    if args.host:
        overrides["service_host"] = args.host
    if args.port:
        overrides["service_port"] = args.port
    settings = Settings(**overrides)
    setup_logging(settings.log_path, settings.log_level)

    supervisor = Supervisor(settings)
    app = create_app(settings, supervisor=supervisor)
    supervisor.start(args.pid if args.pid is not None else settings.watchdog_pid)
    try:
        uvicorn.run(app, host=settings.service_host, port=settings.service_port, log_config=None)
    finally:
        supervisor.stop()


if __name__ == "__main__":
    main()
