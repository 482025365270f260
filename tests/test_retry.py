"""
Tests for Retry Logic Utilities
"""
import asyncio

import pytest

from datafabric.core.exceptions import (
    InvalidQuery,
    KeyConflictError,
    MalformedEventError,
    SubQueryTimeout,
    TransientStoreError,
)
from datafabric.utils.resilience.retry import (
    RetryConfig,
    async_retrying,
    attempts_made,
    is_transient_error,
)


# ============================================
# TEST RETRY CONDITION FUNCTIONS
# ============================================

class TestRetryConditions:
    """Test retry condition functions"""

    def test_transient_fabric_errors_are_retryable(self):
        """Test TransientError subclasses are retryable"""
        assert is_transient_error(TransientStoreError("store busy")) is True
        assert is_transient_error(SubQueryTimeout("slow")) is True

    def test_timeouts_and_connection_errors_are_retryable(self):
        """Test builtin timeouts and connection problems are retryable"""
        assert is_transient_error(asyncio.TimeoutError()) is True
        assert is_transient_error(TimeoutError()) is True
        assert is_transient_error(ConnectionResetError()) is True

    def test_permanent_errors_are_not_retryable(self):
        """Test malformed payloads, key conflicts and bad queries are not retried"""
        assert is_transient_error(MalformedEventError("bad json")) is False
        assert is_transient_error(KeyConflictError("duplicate")) is False
        assert is_transient_error(InvalidQuery("empty")) is False
        assert is_transient_error(ValueError("bug")) is False

    def test_cancellation_is_not_retryable(self):
        """Test a cancelled task is never retried"""
        assert is_transient_error(asyncio.CancelledError()) is False


# ============================================
# TEST RETRY CONTROLLER
# ============================================

class TestAsyncRetrying:
    """Test the async retry controller"""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        """Test transient failures are retried and the result is kept"""
        calls = []
        retrying = async_retrying(max_attempts=3, min_wait=0, max_wait=0)
        async for attempt in retrying:
            with attempt:
                calls.append(1)
                if len(calls) < 3:
                    raise TransientStoreError("busy")
        assert len(calls) == 3
        assert attempts_made(retrying) == 3

    @pytest.mark.asyncio
    async def test_reraises_after_last_attempt(self):
        """Test the original error surfaces once attempts run out"""
        retrying = async_retrying(max_attempts=2, min_wait=0, max_wait=0)
        with pytest.raises(TransientStoreError):
            async for attempt in retrying:
                with attempt:
                    raise TransientStoreError("down")
        assert attempts_made(retrying) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        """Test a non-transient error escapes on the first attempt"""
        retrying = async_retrying(max_attempts=5, min_wait=0, max_wait=0)
        with pytest.raises(KeyConflictError):
            async for attempt in retrying:
                with attempt:
                    raise KeyConflictError("duplicate")
        assert attempts_made(retrying) == 1

    def test_attempts_made_without_controller(self):
        """Test attempts_made tolerates a missing controller"""
        assert attempts_made(None) == 0


class TestRetryConfig:
    """Test retry configuration constants"""

    def test_subquery_retries_fit_a_deadline(self):
        """Test sub-query retries stay well below the default query deadline"""
        worst_case = RetryConfig.SUBQUERY_MAX_WAIT * (RetryConfig.SUBQUERY_MAX_ATTEMPTS - 1)
        assert worst_case < 2.0
        assert RetryConfig.STORE_MAX_ATTEMPTS >= RetryConfig.SUBQUERY_MAX_ATTEMPTS
