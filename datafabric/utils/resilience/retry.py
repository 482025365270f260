"""
Retry Logic Utilities for store and sub-query calls
Provides bounded exponential backoff for transient failures
"""
import asyncio
import logging
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    after_log,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ...core.exceptions import ErrorKind, classify_exception
from ..logger import setup_logger

logger = setup_logger(__name__)


# ============================================
# RETRY CONFIGURATIONS
# ============================================

class RetryConfig:
    """Retry configuration constants"""

    # Sink writer store calls
    STORE_MAX_ATTEMPTS = 5
    STORE_MIN_WAIT = 0.1  # seconds
    STORE_MAX_WAIT = 5.0  # seconds
    STORE_MULTIPLIER = 2

    # Embedding / enrichment collaborators
    TRANSFORM_MAX_ATTEMPTS = 3
    TRANSFORM_MIN_WAIT = 0.1
    TRANSFORM_MAX_WAIT = 2.0
    TRANSFORM_MULTIPLIER = 2

    # Federation sub-queries (must fit inside the query deadline)
    SUBQUERY_MAX_ATTEMPTS = 2
    SUBQUERY_MIN_WAIT = 0.01
    SUBQUERY_MAX_WAIT = 0.2
    SUBQUERY_MULTIPLIER = 2


# ============================================
# RETRY CONDITION FUNCTIONS
# ============================================

def is_transient_error(exception: BaseException) -> bool:
    """
    Check if an exception is worth retrying

    Retryable:
    - TransientError subclasses
    - asyncio / builtin timeouts
    - connection errors

    Everything else (malformed payloads, key conflicts, invalid queries)
    is not retried.
    """
    if isinstance(exception, asyncio.CancelledError):
        return False
    return classify_exception(exception) == ErrorKind.TRANSIENT


# ============================================
# RETRY FACTORIES
# ============================================

def async_retrying(
    max_attempts: int = RetryConfig.STORE_MAX_ATTEMPTS,
    min_wait: float = RetryConfig.STORE_MIN_WAIT,
    max_wait: float = RetryConfig.STORE_MAX_WAIT,
    multiplier: float = RetryConfig.STORE_MULTIPLIER,
    retry_on: Callable[[BaseException], bool] = is_transient_error
) -> AsyncRetrying:
    """
    Build an AsyncRetrying controller for ``async for attempt in ...`` loops

    Example:
        async for attempt in async_retrying(max_attempts=3):
            with attempt:
                await store.apply_batch(ops)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(retry_on),
        before_sleep=before_sleep_log(logger, logging.INFO),
        after=after_log(logger, logging.DEBUG),
        reraise=True
    )


def attempts_made(retrying: Optional[AsyncRetrying]) -> int:
    """Number of attempts a retry controller has consumed"""
    if retrying is None:
        return 0
    return retrying.statistics.get("attempt_number", 0)
