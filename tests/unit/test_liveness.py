from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import psutil
import pytest

from kioskguard.liveness import process
from kioskguard.liveness.heartbeat_protocol import (
    HEARTBEAT_PING,
    HEARTBEAT_PONG,
    create_heartbeat_handler,
    create_heartbeat_ping,
    create_heartbeat_pong,
    decode_heartbeat,
    encode_heartbeat,
    is_heartbeat_ping,
    is_heartbeat_pong,
)
from kioskguard.liveness.heartbeat_sender import HeartbeatSender
from kioskguard.runtime.timers import ManualScheduler
from kioskguard.watchdog.heartbeat import HeartbeatMonitor


class _Proc:
    def __init__(self, status: str = psutil.STATUS_RUNNING, exc: Exception | None = None) -> None:
        self._status = status
        self._exc = exc

    def status(self) -> str:
        if self._exc is not None:
            raise self._exc
        return self._status


def test_is_process_running_checks_pid_and_zombie(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(process.psutil, "pid_exists", lambda pid: pid == 42)
    monkeypatch.setattr(process.psutil, "Process", lambda pid: _Proc())
    assert process.is_process_running(42) is True
    assert process.is_process_running(43) is False
    assert process.is_process_running(0) is False

    monkeypatch.setattr(process.psutil, "Process", lambda pid: _Proc(psutil.STATUS_ZOMBIE))
    assert process.is_process_running(42) is False


def test_is_process_running_treats_access_denied_as_alive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(process.psutil, "pid_exists", lambda pid: True)
    monkeypatch.setattr(process.psutil, "Process", lambda pid: _Proc(exc=psutil.AccessDenied(pid)))
    assert process.is_process_running(7) is True


def test_find_process_by_name_tolerates_exe_suffix(monkeypatch: pytest.MonkeyPatch) -> None:
    procs = [
        SimpleNamespace(info={"pid": 10, "name": "python"}),
        SimpleNamespace(info={"pid": 11, "name": "Kiosk-Shell.exe"}),
    ]
    monkeypatch.setattr(process.psutil, "process_iter", lambda attrs=None: iter(procs))
    assert process.find_process_by_name("kiosk-shell") == 11
    assert process.find_process_by_name("KIOSK-SHELL.EXE") == 11
    assert process.find_process_by_name("missing") is None
    assert process.find_process_by_name("") is None


def test_spawn_process_returns_none_when_os_refuses(tmp_path) -> None:
    assert process.spawn_process(str(tmp_path / "does-not-exist")) is None


def test_heartbeat_messages_encode_and_decode() -> None:
    ping = create_heartbeat_ping(123, channel="c1")
    body = encode_heartbeat(ping)
    assert body["type"] == HEARTBEAT_PING
    assert body["channel"] == "c1"

    back = decode_heartbeat(json.loads(json.dumps(body)))
    assert back.pid == 123
    assert is_heartbeat_ping(back)
    assert not is_heartbeat_pong(back)
    assert is_heartbeat_pong(create_heartbeat_pong(1))

    bare = decode_heartbeat("heartbeat:pong")
    assert bare.type == HEARTBEAT_PONG


@pytest.mark.parametrize("payload", [{"type": "hello"}, 42, ["heartbeat:ping"], {}])
def test_decode_heartbeat_rejects_malformed(payload: Any) -> None:
    with pytest.raises(ValueError):
        decode_heartbeat(payload)


def test_heartbeat_handler_records_ping_and_answers_pong() -> None:
    s = ManualScheduler()
    hb = HeartbeatMonitor({"channel": "kiosk-x"}, scheduler=s)
    hb.start()
    handler = create_heartbeat_handler(hb, pid=5)

    reply = handler.handle_ping()
    assert reply.type == HEARTBEAT_PONG
    assert reply.channel == "kiosk-x"
    assert hb.get_state().last_heartbeat == s.now()

    s.advance(1.0)
    handler.handle_pong()
    assert hb.get_state().last_heartbeat == s.now()


def test_heartbeat_sender_posts_pings_on_interval() -> None:
    s = ManualScheduler()
    received: List[Dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content.decode("utf-8")))
        return httpx.Response(200, json=encode_heartbeat(create_heartbeat_pong(1)))

    sender = HeartbeatSender(
        url="http://supervisor.local/heartbeat",
        interval_ms=1000,
        pid=77,
        scheduler=s,
        transport=httpx.MockTransport(handler),
    )
    sender.start()
    assert len(received) == 1
    s.advance(3.0)
    assert len(received) == 4
    assert all(b["type"] == HEARTBEAT_PING and b["pid"] == 77 for b in received)
    assert sender.last_pong_at == s.now()
    assert sender.consecutive_failures == 0

    sender.stop()
    s.advance(5.0)
    assert len(received) == 4


def test_heartbeat_sender_counts_failures_without_raising() -> None:
    s = ManualScheduler()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "down"})

    sender = HeartbeatSender(
        url="http://supervisor.local/heartbeat", scheduler=s, transport=httpx.MockTransport(handler)
    )
    assert sender.send_once() is False
    assert sender.send_once() is False
    assert sender.consecutive_failures == 2
    assert sender.last_pong_at is None
