"""Per-dependency circuit breakers and the retry delay schedule."""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from signal_trader.schemas import CircuitBreakerState, utcnow

_JITTER_RATIO = 0.1


def retry_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff capped at ``max_delay`` plus up to 10% jitter."""
    if attempt < 0:
        raise ValueError("attempt_must_be_non_negative")
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + rng() * _JITTER_RATIO * delay


class CircuitBreakerRegistry:
    """Breaker table keyed by dependency name.

    A breaker opens once ``failure_count`` reaches ``threshold`` and stays open
    until ``next_retry_time``. After that recovery may be attempted again; one
    more failure re-opens it for another ``recovery_timeout``.
    """

    def __init__(
        self,
        services: Iterable[str],
        *,
        threshold: int,
        recovery_timeout: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._threshold = threshold
        self._recovery_timeout = timedelta(seconds=recovery_timeout)
        self._clock = clock
        self._breakers: dict[str, CircuitBreakerState] = {
            name: CircuitBreakerState() for name in services
        }

    def state(self, service: str) -> CircuitBreakerState:
        return self._breaker(service).model_copy()

    def is_open(self, service: str) -> bool:
        return self._breaker(service).is_open

    def allows_recovery(self, service: str) -> bool:
        breaker = self._breaker(service)
        if not breaker.is_open:
            return True
        return breaker.next_retry_time is None or self._clock() >= breaker.next_retry_time

    def record_failure(self, service: str) -> bool:
        """Count one failure. Returns True when this failure opened the breaker."""
        breaker = self._breaker(service)
        now = self._clock()
        breaker.failure_count += 1
        breaker.last_failure = now
        if breaker.failure_count < self._threshold:
            return False
        was_waiting = breaker.is_open and not self.allows_recovery(service)
        breaker.is_open = True
        if not was_waiting:
            breaker.next_retry_time = now + self._recovery_timeout
        return not was_waiting

    def reset(self, service: str) -> None:
        self._breakers[service] = CircuitBreakerState()

    def snapshot(self) -> dict[str, CircuitBreakerState]:
        return {name: state.model_copy() for name, state in self._breakers.items()}

    def restore(self, states: dict[str, CircuitBreakerState]) -> None:
        for name, state in states.items():
            self._breakers[name] = state.model_copy()

    def _breaker(self, service: str) -> CircuitBreakerState:
        if service not in self._breakers:
            self._breakers[service] = CircuitBreakerState()
        return self._breakers[service]
