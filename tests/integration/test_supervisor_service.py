from __future__ import annotations

from typing import Dict, Optional, Sequence

from fastapi.testclient import TestClient

from kioskguard.liveness.heartbeat_protocol import create_heartbeat_ping, encode_heartbeat
from kioskguard.runtime.timers import ManualScheduler
from kioskguard.service.app import create_app
from kioskguard.service.supervisor import Supervisor
from kioskguard.settings import Settings


class FakeProcesses:
    def __init__(self) -> None:
        self.alive: Dict[int, bool] = {4242: True}
        self.terminated = []
        self.next_pid = 5000

    def liveness(self, pid: int) -> bool:
        return self.alive.get(pid, False)

    def spawner(self, path: str, args: Sequence[str], cwd: Optional[str]) -> Optional[int]:
        self.next_pid += 1
        self.alive[self.next_pid] = True
        return self.next_pid

    def terminator(self, pid: int) -> bool:
        self.terminated.append(pid)
        self.alive[pid] = False
        return True


def _setup(tmp_path, **overrides):
    values = {
        "audit_log_path": str(tmp_path / "audit.jsonl"),
        "log_path": None,
        "watchdog_executable_path": "/opt/kiosk/shell",
        "watchdog_restart_strategy": "immediate",
        "heartbeat_interval_ms": 1_000,
        "heartbeat_timeout_ms": 1_500,
        "heartbeat_missed_threshold": 2,
        "heartbeat_startup_grace_ms": 5_000,
    }
    values.update(overrides)
    s = Settings(**values)
    sched = ManualScheduler()
    procs = FakeProcesses()
    sup = Supervisor(
        s,
        scheduler=sched,
        liveness=procs.liveness,
        spawner=procs.spawner,
        terminator=procs.terminator,
        process_finder=lambda name: None,
    )
    client = TestClient(create_app(s, supervisor=sup))
    return client, sup, sched, procs


def test_health_and_state_routes(tmp_path) -> None:
    client, sup, sched, _ = _setup(tmp_path)
    sup.start(4242)

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True

    state = client.get("/api/state").json()
    assert state["running"] is True
    assert state["watchdog"]["process_state"] == "running"
    assert state["watchdog"]["pid"] == 4242
    assert client.get("/api/heartbeat/state").json()["active"] is False

    sched.advance(5.0)
    assert client.get("/api/heartbeat/state").json()["active"] is True
    sup.stop()


def test_heartbeat_route_answers_pong_and_rejects_garbage(tmp_path) -> None:
    client, sup, sched, _ = _setup(tmp_path, heartbeat_startup_grace_ms=0)
    sup.start(4242)

    r = client.post("/heartbeat", json=encode_heartbeat(create_heartbeat_ping(4242)))
    assert r.status_code == 200
    assert r.json()["type"] == "heartbeat:pong"
    assert sup.heartbeat.get_state().last_heartbeat == sched.now()

    assert client.post("/heartbeat", json="heartbeat:pong").json() == {"ok": True}
    assert client.post("/heartbeat", json={"type": "nonsense"}).status_code == 422

    status = client.post("/heartbeat", json={"type": "status:request"}).json()
    assert status["type"] == "status:response"
    assert status["pid"] == 4242
    sup.stop()


def test_missed_heartbeats_restart_the_host(tmp_path) -> None:
    client, sup, sched, procs = _setup(tmp_path, heartbeat_startup_grace_ms=0)
    sup.start(4242)

    sched.advance(2.0)
    assert procs.terminated == [4242]
    sched.advance(0.0)
    wd = client.get("/api/watchdog/state").json()
    assert wd["pid"] == 5001

    records = client.get("/api/audit/recent", params={"n": 50}).json()["records"]
    types = [r["event_type"] for r in records]
    assert "heartbeat.process-unresponsive" in types
    assert "watchdog.process-restarted" in types
    assert "heartbeat.heartbeat-received" not in types

    assert sup.heartbeat.get_state().active is True
    assert sup.heartbeat.get_state().missed_count == 0
    sup.stop()


def test_manual_restart_route(tmp_path) -> None:
    client, sup, _, _ = _setup(tmp_path)
    sup.start(4242)
    r = client.post("/api/watchdog/restart")
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    sup.stop()

    client2, sup2, _, _ = _setup(tmp_path, watchdog_executable_path=None)
    r = client2.post("/api/watchdog/restart")
    assert r.status_code == 400
    assert "Executable path" in r.json()["detail"]
