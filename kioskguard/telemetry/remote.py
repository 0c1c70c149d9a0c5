from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger(__name__)

SCHEMA = "kioskguard.event.v1"


@dataclass(frozen=True)
class RemoteEvent:
    event_type: str
    device_id: str
    correlation_id: str
    emitted_at_unix: float
    payload: Dict[str, Any] = field(default_factory=dict)
    schema: str = SCHEMA


class RemoteEventEmitter:
    """
    Best-effort fan-out of supervision events to fleet webhooks.

    Events are queued and posted from a daemon thread; a full queue or an
    unreachable webhook drops the event. Nothing here may block or break recovery.
    """

    def __init__(
        self,
        *,
        webhook_urls: List[str],
        device_id: str = "kiosk",
        event_types: Optional[List[str]] = None,
        timeout_s: float = 5.0,
        max_queue: int = 500,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._urls = list(webhook_urls)
        self._device_id = device_id
        self._allowed = set(event_types) if event_types else None
        self._timeout_s = float(timeout_s)
        self._transport = transport
        self._q: "queue.Queue[RemoteEvent]" = queue.Queue(maxsize=max_queue)
        self._stop = threading.Event()
        self._t: threading.Thread | None = None
        self.dropped = 0

    @property
    def enabled(self) -> bool:
        return bool(self._urls)

    def start(self) -> None:
        if self._t is not None or not self._urls:
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="kioskguard_remote_emitter", daemon=True)
        self._t.start()

    def stop(self) -> None:
        self._stop.set()
        self._t = None

    def emit(self, event_type: str, payload: Dict[str, Any], *, correlation_id: str = "") -> bool:
        if not self._urls:
            return False
        if self._allowed is not None and event_type not in self._allowed:
            return False
        ev = RemoteEvent(
            event_type=event_type,
            device_id=self._device_id,
            correlation_id=correlation_id,
            emitted_at_unix=time.time(),
            payload=payload or {},
        )
        try:
            self._q.put_nowait(ev)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def flush(self) -> int:
        """Post everything queued on the calling thread. Returns the number of events sent."""
        sent = 0
        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            while True:
                try:
                    ev = self._q.get_nowait()
                except queue.Empty:
                    return sent
                self._post(client, ev)
                sent += 1
                self._q.task_done()

    def _post(self, client: httpx.Client, ev: RemoteEvent) -> None:
        body = asdict(ev)
        for url in self._urls:
            try:
                client.post(url, json=body)
            except httpx.HTTPError as e:
                log.debug("Remote event %s to %s failed: %s", ev.event_type, url, e)

    def _run(self) -> None:
        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            while not self._stop.is_set():
                try:
                    ev = self._q.get(timeout=0.25)
                except queue.Empty:
                    continue
                try:
                    self._post(client, ev)
                finally:
                    self._q.task_done()
