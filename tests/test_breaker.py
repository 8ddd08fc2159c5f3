"""Tests for the circuit breaker."""

from features.resilience import BreakerRegistry, BreakerState, CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_opens_after_threshold_failures():
    breaker = CircuitBreaker("agent", failure_threshold=2, reset_timeout=60, clock=FakeClock())
    breaker.record_failure()
    assert breaker.allow()
    breaker.record_failure()
    assert breaker.state == BreakerState.OPEN
    assert not breaker.allow()


def test_success_resets_failure_count():
    breaker = CircuitBreaker("agent", failure_threshold=2, clock=FakeClock())
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == BreakerState.CLOSED


def test_half_open_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("agent", failure_threshold=1, reset_timeout=60, clock=clock)
    breaker.record_failure()
    clock.now = 59
    assert not breaker.allow()
    clock.now = 60
    assert breaker.allow()
    assert breaker.state == BreakerState.HALF_OPEN

    breaker.record_failure()
    assert breaker.state == BreakerState.OPEN

    clock.now = 200
    assert breaker.allow()
    breaker.record_success()
    assert breaker.state == BreakerState.CLOSED
    assert breaker.failures == 0


def test_zero_threshold_disables_breaker():
    breaker = CircuitBreaker("agent", failure_threshold=0)
    for _ in range(10):
        breaker.record_failure()
    assert breaker.allow()
    assert breaker.state == BreakerState.CLOSED


def test_registry_reuses_breakers():
    registry = BreakerRegistry(failure_threshold=3, reset_timeout=10)
    assert registry.get("claude") is registry.get("claude")
    assert registry.get("claude") is not registry.get("kimi")
    assert [s["name"] for s in registry.snapshot()] == ["claude", "kimi"]
