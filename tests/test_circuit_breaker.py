"""Tests for the tri-state circuit breaker guarding outbound email."""
import threading

import pytest

from trustcore.service.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    config = CircuitBreakerConfig(
        failure_threshold=3, reset_timeout_ms=10_000, success_threshold=2, half_open_max_requests=1
    )
    return CircuitBreaker("email", config, clock=clock)


def _trip(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        breaker.record_failure()


class TestClosedState:
    def test_starts_closed(self, breaker):
        snapshot = breaker.get_state()
        assert snapshot.state == CircuitState.CLOSED
        assert snapshot.failures == 0
        assert breaker.can_execute() is True

    def test_opens_at_failure_threshold(self, breaker):
        _trip(breaker, 2)
        assert breaker.get_state().state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.get_state().state == CircuitState.OPEN
        assert breaker.can_execute() is False

    def test_success_resets_failure_count(self, breaker):
        _trip(breaker, 2)
        breaker.record_success()
        assert breaker.get_state().failures == 0
        _trip(breaker, 2)
        assert breaker.get_state().state == CircuitState.CLOSED


class TestRecovery:
    def test_stays_open_before_timeout(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(9_999)
        assert breaker.can_execute() is False
        assert breaker.get_state().state == CircuitState.OPEN

    def test_half_open_after_timeout(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(10_000)
        assert breaker.get_state().state == CircuitState.HALF_OPEN

    def test_half_open_admits_one_probe(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(10_000)
        assert breaker.can_execute() is True
        assert breaker.can_execute() is False

    def test_closes_after_success_threshold(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(10_000)
        assert breaker.can_execute()
        breaker.record_success()
        assert breaker.get_state().state == CircuitState.HALF_OPEN
        assert breaker.can_execute()
        breaker.record_success()
        snapshot = breaker.get_state()
        assert snapshot.state == CircuitState.CLOSED
        assert snapshot.failures == 0

    def test_failure_while_half_open_reopens(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(10_000)
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.get_state().state == CircuitState.OPEN
        clock.advance(5_000)
        assert breaker.can_execute() is False

    def test_concurrent_probes_limited(self, clock):
        config = CircuitBreakerConfig(
            failure_threshold=1, reset_timeout_ms=0, success_threshold=1, half_open_max_requests=2
        )
        breaker = CircuitBreaker("email", config, clock=clock)
        breaker.record_failure()
        admitted = []
        barrier = threading.Barrier(8)

        def probe():
            barrier.wait()
            admitted.append(breaker.can_execute())

        threads = [threading.Thread(target=probe) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert admitted.count(True) == 2

    def test_release_returns_half_open_slot(self, breaker, clock):
        _trip(breaker, 3)
        clock.advance(10_000)
        assert breaker.can_execute()
        breaker.release()
        snapshot = breaker.get_state()
        assert snapshot.state == CircuitState.HALF_OPEN
        assert snapshot.half_open_requests == 0
        assert snapshot.successes == 0
        assert breaker.can_execute() is True

    def test_release_outside_half_open_is_noop(self, breaker):
        breaker.release()
        assert breaker.get_state().half_open_requests == 0
        assert breaker.get_state().state == CircuitState.CLOSED


class TestResetAndSnapshot:
    def test_manual_reset_closes(self, breaker):
        _trip(breaker, 3)
        snapshot = breaker.reset()
        assert snapshot.state == CircuitState.CLOSED
        assert snapshot.failures == 0
        assert snapshot.last_failure_time is None
        assert breaker.can_execute()

    def test_snapshot_to_dict_uses_state_value(self, breaker):
        _trip(breaker, 3)
        data = breaker.get_state().to_dict()
        assert data["state"] == "OPEN"
        assert data["failures"] == 3

    def test_invalid_config_rejected(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreakerConfig(reset_timeout_ms=-1)
