"""
Circuit Breaker Pattern for federation sub-queries
Stops dispatching to a store that keeps failing so the query degrades fast
"""
import threading
from typing import Any, Callable, Dict

import pybreaker

from ...core.exceptions import TransientStoreError
from ..logger import setup_logger

logger = setup_logger(__name__)


# ============================================
# CIRCUIT BREAKER CONFIGURATIONS
# ============================================

class CircuitBreakerConfig:
    """Circuit breaker configuration constants"""

    # Circuit breaker state names (from pybreaker library)
    STATE_CLOSED = 'closed'  # Normal operation
    STATE_OPEN = 'open'  # Circuit is open, blocking requests
    STATE_HALF_OPEN = 'half_open'  # Testing recovery

    DEFAULT_FAIL_MAX = 5  # Open circuit after 5 consecutive failures
    DEFAULT_TIMEOUT = 30  # Keep circuit open for 30 seconds


# ============================================
# CIRCUIT BREAKER LISTENERS
# ============================================

class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """
    Listener for circuit breaker state changes
    Logs all state transitions for monitoring
    """

    def __init__(self, service_name: str):
        self.service_name = service_name

    def state_change(self, cb, old_state, new_state):
        """Called when circuit breaker changes state"""
        old_name = old_state.name if old_state else None
        logger.warning(
            f"[{self.service_name}] Circuit breaker state change: "
            f"{old_name} -> {new_state.name}"
        )

        if new_state.name == CircuitBreakerConfig.STATE_OPEN:
            logger.error(
                f"[{self.service_name}] Circuit OPEN - store appears to be down. "
                f"Sub-queries will contribute empty results for {cb.reset_timeout}s"
            )
        elif new_state.name == CircuitBreakerConfig.STATE_HALF_OPEN:
            logger.info(f"[{self.service_name}] Circuit HALF-OPEN - Testing store recovery")
        elif new_state.name == CircuitBreakerConfig.STATE_CLOSED:
            logger.info(f"[{self.service_name}] Circuit CLOSED - Store recovered")

    def failure(self, cb, exc):
        """Called when a call fails"""
        logger.warning(
            f"[{self.service_name}] Call failed: {exc}. "
            f"Failure count: {cb.fail_counter}/{cb.fail_max}"
        )


# ============================================
# BREAKER REGISTRY
# ============================================

class BreakerRegistry:
    """One breaker per federation source, created on first use"""

    def __init__(
        self,
        fail_max: int = CircuitBreakerConfig.DEFAULT_FAIL_MAX,
        reset_timeout: int = CircuitBreakerConfig.DEFAULT_TIMEOUT
    ):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self._breakers: Dict[str, pybreaker.CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> pybreaker.CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = pybreaker.CircuitBreaker(
                    fail_max=self.fail_max,
                    reset_timeout=self.reset_timeout,
                    listeners=[CircuitBreakerListener(name)],
                    name=name
                )
                self._breakers[name] = breaker
            return breaker

    def states(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: get_breaker_state(b) for b in breakers}

    def reset_all(self) -> None:
        logger.info("Resetting all circuit breakers")
        with self._lock:
            for breaker in self._breakers.values():
                breaker.close()


# ============================================
# BREAKER CALLS
# ============================================

def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable,
    *args,
    **kwargs
) -> Any:
    """Call ``func`` through ``breaker``; an open circuit raises a transient error"""
    try:
        return breaker.call(func, *args, **kwargs)
    except pybreaker.CircuitBreakerError as e:
        logger.error(f"Circuit breaker OPEN for {breaker.name}. Store unavailable. {e}")
        raise TransientStoreError(
            f"{breaker.name} is currently unavailable (circuit open)",
            {"breaker": breaker.name}
        ) from e


# ============================================
# UTILITY FUNCTIONS
# ============================================

def get_breaker_state(breaker: pybreaker.CircuitBreaker) -> dict:
    """Get current state of a circuit breaker"""
    return {
        'name': breaker.name,
        'state': breaker.current_state,
        'fail_counter': breaker.fail_counter,
        'fail_max': breaker.fail_max,
        'timeout': breaker.reset_timeout,
        'is_closed': breaker.current_state == CircuitBreakerConfig.STATE_CLOSED,
        'is_open': breaker.current_state == CircuitBreakerConfig.STATE_OPEN,
    }
