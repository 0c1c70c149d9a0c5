from __future__ import annotations

import threading
from typing import Dict, FrozenSet, Generic, Iterable, Mapping, TypeVar

from kioskguard.errors import InvalidTransition

S = TypeVar("S")


class StateMachine(Generic[S]):
    """
    Status holder with an explicit transition table.
    Any transition not listed raises `InvalidTransition`.
    """

    def __init__(self, initial: S, transitions: Mapping[S, Iterable[S]], *, name: str = "state") -> None:
        self._name = name
        self._state = initial
        self._table: Dict[S, FrozenSet[S]] = {k: frozenset(v) for k, v in transitions.items()}
        self._lock = threading.Lock()

    @property
    def state(self) -> S:
        with self._lock:
            return self._state

    def can(self, target: S) -> bool:
        with self._lock:
            return target in self._table.get(self._state, frozenset())

    def transition(self, target: S) -> S:
        with self._lock:
            source = self._state
            if target not in self._table.get(source, frozenset()):
                raise InvalidTransition(self._name, source, target)
            self._state = target
            return source

    def transition_from(self, allowed: Iterable[S], target: S) -> S:
        """Atomically move to `target` only if the current state is in `allowed`."""
        with self._lock:
            source = self._state
            if source not in set(allowed) or target not in self._table.get(source, frozenset()):
                raise InvalidTransition(self._name, source, target)
            self._state = target
            return source

    def force(self, state: S) -> None:
        with self._lock:
            self._state = state
