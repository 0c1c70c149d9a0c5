from __future__ import annotations

import logging
import os
import threading
from typing import Optional

import httpx

from kioskguard.liveness.heartbeat_protocol import (
    DEFAULT_CHANNEL,
    create_heartbeat_ping,
    decode_heartbeat,
    encode_heartbeat,
    is_heartbeat_pong,
)
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler

log = logging.getLogger(__name__)


class HeartbeatSender:
    """
    Host-side half of the heartbeat exchange.

    Posts a ping to the supervisor every `interval_ms`. Failures are logged and
    counted but never raised: a supervisor outage must not affect the kiosk.
    """

    def __init__(
        self,
        *,
        url: str,
        interval_ms: int = 3_000,
        timeout_s: float = 2.0,
        channel: str = DEFAULT_CHANNEL,
        pid: Optional[int] = None,
        scheduler: Optional[Scheduler] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self.channel = channel
        self.pid = os.getpid() if pid is None else pid
        self._scheduler = scheduler or ThreadScheduler()
        self._transport = transport
        self._task = PeriodicTask(self._scheduler, interval_ms / 1000.0, self.send_once, name="heartbeat_sender")
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._last_pong_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def last_pong_at(self) -> Optional[float]:
        with self._lock:
            return self._last_pong_at

    def start(self) -> None:
        if self._task.running:
            return
        self.send_once()
        self._task.start()
        log.info("Heartbeat sender started (url=%s interval=%.1fs)", self.url, self._task.interval_s)

    def stop(self) -> None:
        self._task.stop()

    def send_once(self) -> bool:
        msg = create_heartbeat_ping(self.pid, channel=self.channel)
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as c:
                r = c.post(self.url, json=encode_heartbeat(msg))
                r.raise_for_status()
                reply = decode_heartbeat(r.json())
        except (httpx.HTTPError, ValueError) as e:
            with self._lock:
                self._consecutive_failures += 1
                n = self._consecutive_failures
            log.warning("Heartbeat send failed (%d in a row): %s", n, e)
            return False
        with self._lock:
            self._consecutive_failures = 0
            if is_heartbeat_pong(reply):
                self._last_pong_at = self._scheduler.now()
        return True
