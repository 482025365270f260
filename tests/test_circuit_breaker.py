"""
Tests for Circuit Breaker Pattern
"""
import pybreaker
import pytest

from datafabric.core.exceptions import TransientStoreError
from datafabric.utils.resilience.circuit_breaker import (
    BreakerRegistry,
    CircuitBreakerConfig,
    call_with_breaker,
    get_breaker_state,
)


def failing(*args, **kwargs):
    raise ConnectionError("store unreachable")


class TestCircuitBreakerConfig:
    """Test circuit breaker configuration"""

    def test_defaults(self):
        """Test default thresholds"""
        assert CircuitBreakerConfig.DEFAULT_FAIL_MAX == 5
        assert CircuitBreakerConfig.DEFAULT_TIMEOUT == 30
        assert CircuitBreakerConfig.STATE_OPEN == "open"


class TestBreakerRegistry:
    """Test per-source breakers"""

    def test_one_breaker_per_name(self):
        """Test the registry returns the same breaker for a name"""
        registry = BreakerRegistry(fail_max=2, reset_timeout=10)
        assert registry.get("vector") is registry.get("vector")
        assert registry.get("vector") is not registry.get("graph")
        assert registry.get("graph").fail_max == 2

    def test_states(self):
        """Test states() reports every created breaker"""
        registry = BreakerRegistry()
        registry.get("keyword")
        states = registry.states()
        assert set(states) == {"keyword"}
        assert states["keyword"]["is_closed"] is True

    def test_reset_all_closes_open_breakers(self):
        """Test reset_all() closes every breaker"""
        registry = BreakerRegistry(fail_max=1, reset_timeout=60)
        registry.get("vector").open()
        assert registry.states()["vector"]["is_open"] is True
        registry.reset_all()
        assert registry.states()["vector"]["is_closed"] is True


class TestCallWithBreaker:
    """Test calls through a breaker"""

    def test_success_passes_through(self):
        """Test a healthy call returns its value"""
        breaker = BreakerRegistry().get("ok")
        assert call_with_breaker(breaker, lambda x: x * 2, 21) == 42

    def test_failures_open_the_circuit(self):
        """Test fail_max consecutive failures open the breaker"""
        breaker = BreakerRegistry(fail_max=2, reset_timeout=60).get("flaky")
        with pytest.raises(ConnectionError):
            call_with_breaker(breaker, failing)
        with pytest.raises((ConnectionError, TransientStoreError)):
            call_with_breaker(breaker, failing)
        assert breaker.current_state == CircuitBreakerConfig.STATE_OPEN

    def test_open_circuit_raises_transient_error(self):
        """Test an open circuit is reported as a transient store error"""
        breaker = BreakerRegistry().get("down")
        breaker.open()
        with pytest.raises(TransientStoreError, match="circuit open"):
            call_with_breaker(breaker, lambda: "never")


class TestGetBreakerState:
    """Test breaker state reporting"""

    def test_closed_state(self):
        """Test a fresh breaker reports closed"""
        breaker = pybreaker.CircuitBreaker(fail_max=3, reset_timeout=15, name="fresh")
        state = get_breaker_state(breaker)
        assert state["name"] == "fresh"
        assert state["state"] == "closed"
        assert state["fail_counter"] == 0
        assert state["fail_max"] == 3
        assert state["timeout"] == 15
        assert state["is_open"] is False
