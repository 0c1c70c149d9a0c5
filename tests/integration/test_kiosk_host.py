from __future__ import annotations

import hashlib
import io
import os
import zipfile
from typing import Any, Dict, List

import httpx

from kioskguard.host import KioskHost
from kioskguard.liveness.heartbeat_protocol import create_heartbeat_pong, encode_heartbeat
from kioskguard.models import HostEvent
from kioskguard.runtime.timers import ManualScheduler
from kioskguard.settings import Settings


class Backend:
    """Content CDN + supervisor heartbeat endpoint behind one MockTransport."""

    def __init__(self) -> None:
        self.info: Dict[str, Any] = {}
        self.packages: Dict[str, bytes] = {}
        self.heartbeats = 0

    def publish(self, version: str) -> None:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("index.html", f"<h1>{version}</h1>")
        data = buf.getvalue()
        self.packages[version] = data
        self.info = {
            "version": version,
            "downloadUrl": f"http://cdn.local/pkg/{version}.zip",
            "hash": "sha256:" + hashlib.sha256(data).hexdigest(),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/heartbeat":
            self.heartbeats += 1
            return httpx.Response(200, json=encode_heartbeat(create_heartbeat_pong(1)))
        if path == "/version.json":
            return httpx.Response(200, json=self.info)
        if path.startswith("/pkg/"):
            return httpx.Response(200, content=self.packages[path[5:-4]])
        return httpx.Response(404)


def _host(tmp_path, backend: Backend, **overrides: Any) -> KioskHost:
    values: Dict[str, Any] = {
        "audit_log_path": str(tmp_path / "audit.jsonl"),
        "log_path": None,
        "updater_buffer_base_dir": str(tmp_path / "content"),
        "updater_version_check_url": "http://cdn.local/version.json",
        "updater_auto_apply": True,
        "rollback_backup_dir": str(tmp_path / "backups"),
        "recovery_max_restarts": 1,
        "post_update_grace_ms": 60_000,
    }
    values.update(overrides)
    return KioskHost(Settings(**values), scheduler=ManualScheduler(), transport=httpx.MockTransport(backend.handler))


def _index(path: str) -> str:
    with open(os.path.join(path, "index.html"), "r", encoding="utf-8") as f:
        return f.read()


def _two_releases(host: KioskHost, backend: Backend) -> None:
    for v in ("1.0.0", "1.1.0"):
        backend.publish(v)
        assert host.run_update_cycle().success
    assert host.updater.get_current_version() == "1.1.0"


def test_update_cycle_backs_up_each_applied_version(tmp_path, make_surface) -> None:
    backend = Backend()
    host = _host(tmp_path, backend)
    host.start()
    assert backend.heartbeats == 1
    ui = make_surface()
    host.attach_surface(ui)

    _two_releases(host, backend)

    assert [b.version for b in host.rollback.get_available_backups()] == ["1.1.0", "1.0.0"]
    assert ui.reloads == 2
    host.scheduler.advance(3.0)
    assert backend.heartbeats == 2
    host.stop()


def test_crash_loop_right_after_update_reverts_content(tmp_path, make_surface) -> None:
    backend = Backend()
    host = _host(tmp_path, backend)
    host.start()
    ui = make_surface()
    host.attach_surface(ui)
    _two_releases(host, backend)
    events: List[HostEvent] = []
    host.on_host_event(events.append)

    host.recovery.trigger_crash_recovery(ui)
    host.recovery.trigger_crash_recovery(ui)

    assert [e.type for e in events] == ["content-reverted"]
    assert events[0].version == "1.0.0"
    assert host.updater.get_current_version() == "1.0.0"
    assert _index(host.updater.get_active_slot_path()) == "<h1>1.0.0</h1>"
    assert "1.1.0" in host.updater.get_state().rejected_versions
    assert host.recovery.get_state(ui).crashes == []

    # The rejected release is not offered again.
    res = host.run_update_cycle()
    assert res.success and res.version is None
    host.stop()


def test_ledger_restores_content_when_slot_flip_is_impossible(tmp_path, make_surface) -> None:
    backend = Backend()
    host = _host(tmp_path, backend)
    host.start()
    ui = make_surface()
    host.attach_surface(ui)
    _two_releases(host, backend)

    # The previous slot was wiped, so only the backup ledger still has 1.0.0.
    inactive = host.updater.get_inactive_slot_path()
    for name in os.listdir(inactive):
        os.unlink(os.path.join(inactive, name))
    host.updater.reload_slots()
    events: List[HostEvent] = []
    host.on_host_event(events.append)

    host.recovery.trigger_crash_recovery(ui)
    host.recovery.trigger_crash_recovery(ui)

    assert [e.type for e in events] == ["content-reverted"]
    assert _index(host.updater.get_active_slot_path()) == "<h1>1.0.0</h1>"
    assert host.updater.get_current_version() == "1.0.0"
    assert "1.1.0" in host.updater.get_state().rejected_versions
    host.stop()


def test_crash_loop_long_after_update_escalates(tmp_path, make_surface) -> None:
    backend = Backend()
    host = _host(tmp_path, backend, post_update_grace_ms=1_000)
    host.start()
    ui = make_surface()
    host.attach_surface(ui)
    _two_releases(host, backend)
    host.scheduler.advance(5.0)
    events: List[HostEvent] = []
    host.on_host_event(events.append)

    host.recovery.trigger_crash_recovery(ui)
    host.recovery.trigger_crash_recovery(ui)

    assert [e.type for e in events] == ["escalate"]
    assert events[0].reason == "max-restarts-exceeded"
    assert host.updater.get_current_version() == "1.1.0"
    host.stop()


def test_blank_surface_is_retried(tmp_path, make_surface) -> None:
    backend = Backend()
    host = _host(
        tmp_path,
        backend,
        updater_version_check_url=None,
        blank_check_interval_ms=100,
        blank_threshold=2,
        retry_initial_delay_ms=50,
    )
    host.start()
    ui = make_surface(probe={"isBlank": True, "reason": "empty-body"})
    host.attach_surface(ui)

    host.scheduler.advance(0.25)
    assert ui.reloads == 1
    assert host.recovery.auto_retry.get_state(ui).total_retries == 1

    records = host.audit.tail(50)
    assert "recovery.blank-detected" in [r["event_type"] for r in records]
    host.detach_surface(ui)
    assert host.recovery.get_state(ui) is None
    host.stop()
