"""Resilience layer -- retry classification, backoff, and circuit breaking.

* :func:`should_retry` / :func:`compute_delay` -- pure policy functions.
* :class:`CircuitBreaker` -- CLOSED/OPEN/HALF_OPEN gate per operation class.
* :class:`RetryExecutor` -- the retry loop that combines both.
"""

from restpipe.resilience.backoff import (
    TRANSIENT_NETWORK_CODES,
    compute_delay,
    is_retryable_error,
    should_retry,
)
from restpipe.resilience.breaker import CircuitBreaker, CircuitBreakerState
from restpipe.resilience.retry import AttemptError, RetryAttemptRecord, RetryExecutor

__all__ = [
    "TRANSIENT_NETWORK_CODES",
    "AttemptError",
    "CircuitBreaker",
    "CircuitBreakerState",
    "RetryAttemptRecord",
    "RetryExecutor",
    "compute_delay",
    "is_retryable_error",
    "should_retry",
]
