"""Tri-state circuit breaker guarding a flaky downstream dependency.

State moves CLOSED -> OPEN after ``failure_threshold`` consecutive failures,
OPEN -> HALF_OPEN lazily once ``reset_timeout_ms`` has passed since the last
failure, and HALF_OPEN -> CLOSED after ``success_threshold`` successful probes.
Any failure while HALF_OPEN reopens the circuit. There is no background timer:
the OPEN -> HALF_OPEN check runs on every ``can_execute`` / ``get_state`` call.

All counters are guarded by a single lock so concurrent request handlers see
a consistent probe count while HALF_OPEN.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

from trustcore.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_ms: int = 60_000
    success_threshold: int = 2
    half_open_max_requests: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.half_open_max_requests < 1:
            raise ValueError("half_open_max_requests must be at least 1")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be non-negative")


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    state: CircuitState
    failures: int
    successes: int
    half_open_requests: int
    last_failure_time: Optional[int]
    last_state_change: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or _wall_clock_ms
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_requests = 0
        self._last_failure_time: Optional[int] = None
        self._last_state_change = self._clock()

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds self._lock
        if new_state == self._state:
            return
        previous = self._state
        self._state = new_state
        self._last_state_change = self._clock()
        logger.info(
            "circuit_breaker_transition",
            breaker=self.name,
            previous=previous.value,
            state=new_state.value,
            failures=self._failures,
        )

    def _check_state_transition(self) -> None:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return
        elapsed = self._clock() - self._last_failure_time
        if elapsed >= self.config.reset_timeout_ms:
            self._transition(CircuitState.HALF_OPEN)
            self._successes = 0
            self._half_open_requests = 0

    def can_execute(self) -> bool:
        """Return True when a guarded call may proceed.

        While HALF_OPEN, each True result reserves one probe slot, released by
        the matching ``record_success`` / ``record_failure`` or by
        ``release`` when the call is abandoned.
        """
        with self._lock:
            self._check_state_transition()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_requests >= self.config.half_open_max_requests:
                    return False
                self._half_open_requests += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_requests = max(0, self._half_open_requests - 1)
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    self._failures = 0
                    self._successes = 0
                    self._half_open_requests = 0
            elif self._state == CircuitState.CLOSED:
                self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_requests = 0
                self._successes = 0
                self._transition(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failures >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Return a HALF_OPEN slot whose call ended without an outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_requests = max(0, self._half_open_requests - 1)

    def reset(self) -> CircuitBreakerSnapshot:
        """Force CLOSED with all counters zeroed (operator recovery)."""
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failures = 0
            self._successes = 0
            self._half_open_requests = 0
            self._last_failure_time = None
            self._last_state_change = self._clock()
            return self._snapshot()

    def get_state(self) -> CircuitBreakerSnapshot:
        with self._lock:
            self._check_state_transition()
            return self._snapshot()

    def _snapshot(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            half_open_requests=self._half_open_requests,
            last_failure_time=self._last_failure_time,
            last_state_change=self._last_state_change,
        )


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerSnapshot",
    "CircuitState",
]
