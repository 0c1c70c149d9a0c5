from __future__ import annotations

from kioskguard.models import RestartStrategy

INITIAL_BACKOFF_DELAY_MS = 1_000
BACKOFF_MULTIPLIER = 2


class RestartBackoff:
    """
    Delay sequence for consecutive restart attempts.

    - immediate: always 0
    - delayed: always `restart_delay_ms`
    - exponential-backoff: initial, initial*m, initial*m^2, ... capped at `max_backoff_delay_ms`
    - none: -1 (no restart)
    """

    def __init__(
        self,
        strategy: RestartStrategy,
        *,
        restart_delay_ms: int = 2_000,
        max_backoff_delay_ms: int = 60_000,
        initial_ms: int = INITIAL_BACKOFF_DELAY_MS,
        multiplier: int = BACKOFF_MULTIPLIER,
    ) -> None:
        self.strategy = RestartStrategy(strategy)
        self.restart_delay_ms = int(restart_delay_ms)
        self.max_backoff_delay_ms = int(max_backoff_delay_ms)
        self.initial_ms = int(initial_ms)
        self.multiplier = int(multiplier)
        self._current = self.initial_ms

    @property
    def current_delay_ms(self) -> int:
        return self._current

    def next_delay_ms(self) -> int:
        if self.strategy == RestartStrategy.none:
            return -1
        if self.strategy == RestartStrategy.immediate:
            return 0
        if self.strategy == RestartStrategy.delayed:
            return self.restart_delay_ms
        delay = min(self._current, self.max_backoff_delay_ms)
        self._current = min(self._current * self.multiplier, self.max_backoff_delay_ms)
        return delay

    def reset(self) -> None:
        self._current = self.initial_ms
