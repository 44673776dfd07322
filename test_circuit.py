"""Tests for the per-provider circuit breaker."""

import pytest

from circuit import CircuitBreaker, CircuitState
from conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test", failure_threshold=3, cooldown=60.0, clock=clock)


class TestCircuitBreaker:
    """Closed -> open -> half-open -> closed/open."""

    def test_opens_after_threshold(self, breaker):
        for _ in range(2):
            breaker.record_failure()
            assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False
        assert breaker.consecutive_failures == 3

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 1

    def test_excluded_for_exactly_the_cooldown(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()

        clock.advance(59.5)
        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after == pytest.approx(0.5)

        clock.advance(0.5)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_half_open_admits_a_single_probe(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(60)

        assert breaker.allow_request() is True
        assert breaker.allow_request() is False
        assert breaker.is_available() is False

    def test_probe_failure_reopens_and_restarts_cooldown(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(60)
        breaker.allow_request()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        clock.advance(30)
        assert breaker.state == CircuitState.OPEN
        clock.advance(30)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_fails_k_times_then_recovers(self, breaker, clock):
        """A provider failing exactly K=4 times, then succeeding."""
        outcomes = iter([False] * 4 + [True])
        for _ in range(3):
            assert breaker.allow_request()
            assert next(outcomes) is False
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.advance(60)
        assert breaker.allow_request()
        assert next(outcomes) is False
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        clock.advance(60)
        assert breaker.allow_request()
        assert next(outcomes) is True
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.allow_request() is True

    def test_release_probe_returns_the_slot(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock.advance(60)
        breaker.allow_request()
        breaker.release_probe()

        assert breaker.allow_request() is True

    def test_state_change_callback(self, clock):
        changes = []
        breaker = CircuitBreaker("cb", failure_threshold=1, cooldown=10, clock=clock,
                                 on_state_change=lambda name, old, new: changes.append((old, new)))
        breaker.record_failure()
        clock.advance(10)
        assert breaker.state == CircuitState.HALF_OPEN
        breaker.record_success()

        assert changes == [(CircuitState.CLOSED, CircuitState.OPEN),
                           (CircuitState.OPEN, CircuitState.HALF_OPEN),
                           (CircuitState.HALF_OPEN, CircuitState.CLOSED)]

    def test_rejects_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker("bad", failure_threshold=0)
