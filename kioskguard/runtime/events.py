from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, List, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[T], None]


class EventBus(Generic[T]):
    """
    Ordered observer list.

    Handlers run synchronously on the emitting thread, in registration order.
    A failing handler is logged and never stops the remaining handlers.
    """

    def __init__(self, name: str = "events") -> None:
        self._name = name
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _dispose() -> None:
            self.unsubscribe(handler)

        return _dispose

    def unsubscribe(self, handler: Handler) -> None:
        with self._lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                return

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def emit(self, event: T) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for h in handlers:
            try:
                h(event)
            except Exception:
                log.exception("%s: event handler failed", self._name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
