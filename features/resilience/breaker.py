"""
Circuit breaker — stops hammering a collaborator that keeps failing.

States and transitions:
  closed    → open       after `failure_threshold` consecutive failures
  open      → half_open  once `reset_timeout` seconds have passed
  half_open → closed     on the next success
  half_open → open       on the next failure
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

log = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    reset_timeout: float = 600.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    opened_at: float | None = None

    @property
    def enabled(self) -> bool:
        return self.failure_threshold > 0

    def allow(self) -> bool:
        """Return True if a call may go through right now."""
        if not self.enabled or self.state == BreakerState.CLOSED:
            return True
        if self.state == BreakerState.OPEN:
            if self.opened_at is not None and self.clock() - self.opened_at >= self.reset_timeout:
                self.state = BreakerState.HALF_OPEN
                log.info("[BREAKER] %s: half-open, allowing a trial call", self.name)
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state != BreakerState.CLOSED:
            log.info("[BREAKER] %s: closed", self.name)
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        if not self.enabled:
            return
        self.failures += 1
        if self.state == BreakerState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = self.clock()
        log.warning(
            "[BREAKER] %s: open after %d consecutive failure(s), cooling down %.0fs",
            self.name, self.failures, self.reset_timeout,
        )

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "opened_at": self.opened_at,
        }


class BreakerRegistry:
    """Maps a breaker name to its state. Owned by the component that uses it."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self.clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> list[dict]:
        return [b.snapshot() for b in self._breakers.values()]
