"""
Resilience Utilities

Provides retry logic and circuit breaker patterns for store and sub-query calls.
"""

from .retry import (
    RetryConfig,
    is_transient_error,
    async_retrying,
    attempts_made,
)
from .circuit_breaker import (
    CircuitBreakerConfig,
    BreakerRegistry,
    call_with_breaker,
    get_breaker_state,
)

__all__ = [
    # Retry logic
    "RetryConfig",
    "is_transient_error",
    "async_retrying",
    "attempts_made",
    # Circuit breaker
    "CircuitBreakerConfig",
    "BreakerRegistry",
    "call_with_breaker",
    "get_breaker_state",
]
