"""
Unit tests for the recovery circuit breaker.

Tests libs/extraction/circuit_breaker.py
"""

from libs.extraction.circuit_breaker import BreakerState, CircuitBreaker


class TestCircuitBreakerStates:
    """Test closed -> open -> half-open transitions."""

    def test_stays_closed_below_threshold(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=5, clock=fake_clock)
        for _ in range(4):
            breaker.record_failure("headless-fallback")

        assert breaker.state("headless-fallback") == BreakerState.CLOSED
        assert breaker.allow("headless-fallback")
        assert breaker.failure_count("headless-fallback") == 4

    def test_opens_at_threshold(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=5, clock=fake_clock)
        for _ in range(5):
            state = breaker.record_failure("headless-fallback")

        assert state == BreakerState.OPEN
        assert breaker.is_open("headless-fallback")
        assert not breaker.allow("headless-fallback")

    def test_half_open_after_cooldown(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=5, timeout_s=300, clock=fake_clock)
        for _ in range(5):
            breaker.record_failure("stealth-extraction")

        fake_clock.advance(299)
        assert breaker.state("stealth-extraction") == BreakerState.OPEN

        fake_clock.advance(1)
        assert breaker.state("stealth-extraction") == BreakerState.HALF_OPEN
        assert breaker.allow("stealth-extraction")

    def test_failed_trial_reopens(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=2, timeout_s=60, clock=fake_clock)
        breaker.record_failure("proxy-extraction")
        breaker.record_failure("proxy-extraction")
        fake_clock.advance(61)
        assert breaker.state("proxy-extraction") == BreakerState.HALF_OPEN

        state = breaker.record_failure("proxy-extraction")
        assert state == BreakerState.OPEN

        # The cooldown restarts from the failed trial
        fake_clock.advance(59)
        assert breaker.is_open("proxy-extraction")

    def test_success_closes_and_resets_count(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=2, timeout_s=60, clock=fake_clock)
        breaker.record_failure("proxy-extraction")
        breaker.record_failure("proxy-extraction")
        fake_clock.advance(60)

        breaker.record_success("proxy-extraction")

        assert breaker.state("proxy-extraction") == BreakerState.CLOSED
        assert breaker.failure_count("proxy-extraction") == 0

    def test_names_are_independent(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=fake_clock)
        breaker.record_failure("a")

        assert breaker.is_open("a")
        assert not breaker.is_open("b")


class TestCircuitBreakerInspection:
    """Test snapshot and reset."""

    def test_snapshot(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=2, clock=fake_clock)
        breaker.record_failure("delayed-extraction")

        snapshot = breaker.snapshot()
        assert snapshot == {
            "delayed-extraction": {"failure_count": 1, "last_failure_at": 1000.0, "state": "closed"}
        }

    def test_reset_one_and_all(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=fake_clock)
        breaker.record_failure("a")
        breaker.record_failure("b")

        breaker.reset("a")
        assert not breaker.is_open("a")
        assert breaker.is_open("b")

        breaker.reset()
        assert breaker.snapshot() == {}
