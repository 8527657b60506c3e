"""Retry classification and backoff delay computation.

Both functions here are pure: they read a :class:`~restpipe.models.RetryPolicy`
and the failed attempt, and never sleep or mutate state. The retry loop in
:mod:`restpipe.resilience.retry` and the built-in retry interceptor share
them so that both classify errors identically.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional

import httpx

from restpipe.models import BackoffStrategy, RetryPolicy

TRANSIENT_NETWORK_CODES = frozenset(
    {
        "ECONNRESET",
        "ENOTFOUND",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ECONNABORTED",
        "EHOSTUNREACH",
        "ENETUNREACH",
    }
)
"""Fault codes that mark a network error as transient."""

RETRYABLE_CATEGORIES = frozenset(
    {"TimeoutError", "NetworkError", "DNSError", "ConnectionError"}
)
"""Exception class names considered retryable wherever they appear in the MRO."""


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.upper()
    errno = getattr(error, "errno", None)
    if errno is not None:
        import errno as errno_module

        return errno_module.errorcode.get(errno)
    return None


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response: Any = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def is_retryable_error(error: BaseException, policy: RetryPolicy) -> bool:
    """Classify *error* as transient using the default rules.

    An error is retryable when any of the following holds:

    * it carries a transient network code (``code`` or ``errno``
      attribute, or the code appears in the message);
    * it carries an HTTP status in ``policy.retry_status_codes``
      (``status_code`` attribute or ``response.status_code``);
    * its class, or any base class, is named ``TimeoutError``,
      ``NetworkError``, ``DNSError`` or ``ConnectionError``, or it is an
      :class:`asyncio.TimeoutError` or :class:`httpx.TransportError`.
    """
    code = _error_code(error)
    if code in TRANSIENT_NETWORK_CODES:
        return True
    message = str(error)
    if any(known in message for known in TRANSIENT_NETWORK_CODES):
        return True

    status = _status_code(error)
    if status is not None and status in policy.retry_status_codes:
        return True

    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError)):
        return True
    if any(cls.__name__ in RETRYABLE_CATEGORIES for cls in type(error).__mro__):
        return True
    return any(category in message for category in RETRYABLE_CATEGORIES)


def should_retry(error: BaseException, attempt: int, policy: RetryPolicy) -> bool:
    """Decide whether to retry after *attempt* failed with *error*.

    Args:
        error: The exception the attempt raised.
        attempt: 1-based number of the attempt that just failed.
        policy: The active retry policy.

    Returns:
        ``True`` when ``attempt <= policy.max_retries`` and the error is
        retryable. A ``policy.retry_condition``, when set, replaces the
        default classification entirely.
    """
    if attempt > policy.max_retries:
        return False
    if policy.retry_condition is not None:
        return bool(policy.retry_condition(error, attempt))
    return is_retryable_error(error, policy)


def compute_delay(
    attempt: int, policy: RetryPolicy, rng: random.Random | None = None
) -> float:
    """Compute the wait in seconds before the retry following *attempt*.

    The base delay depends on ``policy.backoff_strategy``:

    * exponential: ``retry_delay * backoff_factor ** (attempt - 1)``
    * linear: ``retry_delay * attempt``
    * fixed: ``retry_delay``

    With jitter enabled the base is perturbed uniformly within
    ``+/- base * jitter_factor``. The result is clamped to
    ``[min_retry_delay, max_retry_delay]``.

    Args:
        attempt: 1-based number of the attempt that just failed.
        policy: The active retry policy.
        rng: Random source for jitter; defaults to the :mod:`random` module.
    """
    attempt = max(attempt, 1)
    strategy = policy.backoff_strategy
    if strategy == BackoffStrategy.EXPONENTIAL:
        delay = policy.retry_delay * policy.backoff_factor ** (attempt - 1)
    elif strategy == BackoffStrategy.LINEAR:
        delay = policy.retry_delay * attempt
    else:
        delay = policy.retry_delay

    if policy.jitter and policy.jitter_factor > 0:
        spread = delay * policy.jitter_factor
        source = rng if rng is not None else random
        delay += source.uniform(-spread, spread)

    return min(max(delay, policy.min_retry_delay), policy.max_retry_delay)
