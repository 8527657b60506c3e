"""Retry loop with circuit-breaker gating and attempt records.

:class:`RetryExecutor` owns one :class:`~restpipe.resilience.breaker.CircuitBreaker`
per operation key and runs operations through them. Every attempt passes the
breaker gate first. A failed attempt is recorded in the breaker; if that
left the breaker open the loop ends at once. Otherwise the failure is
classified with :func:`~restpipe.resilience.backoff.should_retry`, and only a
retryable one is followed by a
:func:`~restpipe.resilience.backoff.compute_delay` wait on :func:`asyncio.sleep`.

Each call to :meth:`RetryExecutor.execute` produces a
:class:`RetryAttemptRecord`, frozen once the operation settles and kept in a
bounded history for :meth:`RetryExecutor.get_stats`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from restpipe.context import CancellationToken
from restpipe.exceptions import (
    CircuitOpenError,
    OperationCancelledError,
    RetryExhaustedError,
)
from restpipe.models import CircuitBreakerConfig, RetryPolicy
from restpipe.resilience.backoff import compute_delay, should_retry
from restpipe.resilience.breaker import CircuitBreaker

logger = logging.getLogger(__name__)

Operation = Callable[[], Union[Awaitable[Any], Any]]
RetryDecision = Callable[[BaseException, int], Optional[bool]]


@dataclass(frozen=True)
class AttemptError:
    """One failed attempt inside a :class:`RetryAttemptRecord`."""

    attempt: int
    error: BaseException
    timestamp: float


@dataclass
class RetryAttemptRecord:
    """Bookkeeping for one :meth:`RetryExecutor.execute` call.

    The record is mutable while the operation runs. :meth:`finalize` freezes
    it; any later assignment raises :class:`AttributeError`.
    """

    execution_id: str
    operation: str
    attempts: int = 0
    errors: list[AttemptError] = field(default_factory=list)
    total_delay: float = 0.0
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    succeeded: bool = False
    final_error: Optional[BaseException] = None
    _frozen: bool = field(default=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError(
                f"RetryAttemptRecord {self.execution_id} is finalized"
            )
        super().__setattr__(name, value)

    def add_error(self, attempt: int, error: BaseException) -> None:
        if self._frozen:
            raise AttributeError(
                f"RetryAttemptRecord {self.execution_id} is finalized"
            )
        self.errors.append(AttemptError(attempt, error, time.time()))

    def finalize(
        self, succeeded: bool, final_error: Optional[BaseException] = None
    ) -> None:
        self.succeeded = succeeded
        self.final_error = final_error
        self.finished_at = time.time()
        self._frozen = True

    @property
    def completed(self) -> bool:
        return self._frozen


class RetryExecutor:
    """Runs operations with retries behind per-key circuit breakers.

    Args:
        default_policy: Policy used when :meth:`execute` gets none.
        breaker_config: Thresholds for breakers created on first use.
        history_limit: Number of finished :class:`RetryAttemptRecord` objects
            kept for statistics.
        clock: Monotonic clock handed to every breaker.
        sleep: Coroutine function used to wait between attempts.
        rng: Random source for jitter.

    Example::

        executor = RetryExecutor(RetryPolicy(max_retries=2))
        data = await executor.execute(lambda: fetch_users(), key="users-api")
    """

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        *,
        history_limit: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._breakers: dict[str, CircuitBreaker] = {}
        self._history: deque[RetryAttemptRecord] = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def get_breaker(self, key: str = "default") -> CircuitBreaker:
        """Return the breaker for *key*, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(key, self.breaker_config, clock=self._clock)
                self._breakers[key] = breaker
            return breaker

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        *,
        key: str = "default",
        cancel: Optional[CancellationToken] = None,
        decide: Optional[RetryDecision] = None,
        passthrough: tuple[type[BaseException], ...] = (OperationCancelledError,),
    ) -> Any:
        """Run *operation* until it succeeds or retrying stops.

        Args:
            operation: Zero-argument callable; may return an awaitable.
            policy: Retry policy; defaults to :attr:`default_policy`.
            key: Selects the circuit breaker guarding this operation.
            cancel: Checked before every attempt and after every wait.
            decide: Optional ``(error, attempt) -> bool | None`` hook. A
                boolean result replaces the default classification for that
                failure (still bounded by ``policy.max_retries``); ``None``
                falls back to :func:`should_retry`.
            passthrough: Exception types that propagate unchanged without
                counting as a breaker failure or being retried.

        Returns:
            The value produced by the first successful attempt.

        Raises:
            CircuitOpenError: If the breaker rejects the very first attempt.
                The operation is not called.
            RetryExhaustedError: If an attempt fails and no retry follows,
                either because the error is not retryable, the retry budget
                is spent, or the breaker rejects the next attempt.
            OperationCancelledError: If *cancel* fires between attempts.
        """
        policy = policy or self.default_policy
        breaker = self.get_breaker(key)
        record = RetryAttemptRecord(execution_id=uuid.uuid4().hex, operation=key)
        attempt = 0
        last_error: Optional[BaseException] = None

        try:
            while True:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                attempt += 1
                try:
                    breaker.before_call()
                except CircuitOpenError as exc:
                    if last_error is None:
                        raise
                    raise RetryExhaustedError(attempt - 1, last_error) from exc
                record.attempts = attempt

                try:
                    result = await self._run_attempt(operation, policy)
                except passthrough:
                    breaker.release_trial()
                    raise
                except Exception as exc:
                    breaker.record_failure()
                    last_error = exc
                    record.add_error(attempt, exc)
                    try:
                        breaker.reject_if_open()
                    except CircuitOpenError as open_exc:
                        logger.debug(
                            "Operation '%s' not retried after attempt %d: circuit open",
                            key,
                            attempt,
                        )
                        raise RetryExhaustedError(attempt, exc) from open_exc
                    if not self._should_retry(exc, attempt, policy, decide):
                        logger.debug(
                            "Operation '%s' not retried after attempt %d: %s",
                            key,
                            attempt,
                            exc,
                        )
                        raise RetryExhaustedError(attempt, exc) from exc
                    delay = compute_delay(attempt, policy, self._rng)
                    record.total_delay += delay
                    logger.warning(
                        "Operation '%s' attempt %d failed (%s); retrying in %.2fs",
                        key,
                        attempt,
                        exc,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                except BaseException:
                    breaker.release_trial()
                    raise

                breaker.record_success()
                record.finalize(True)
                return result
        except BaseException as exc:
            if not record.completed:
                record.finalize(False, exc)
            raise
        finally:
            self._history.append(record)

    async def _run_attempt(self, operation: Operation, policy: RetryPolicy) -> Any:
        result = operation()
        if inspect.isawaitable(result):
            if policy.timeout is not None:
                return await asyncio.wait_for(result, policy.timeout)
            return await result
        return result

    @staticmethod
    def _should_retry(
        error: BaseException,
        attempt: int,
        policy: RetryPolicy,
        decide: Optional[RetryDecision],
    ) -> bool:
        if decide is not None:
            verdict = decide(error, attempt)
            if verdict is not None:
                return bool(verdict) and attempt <= policy.max_retries
        return should_retry(error, attempt, policy)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def history(self) -> list[RetryAttemptRecord]:
        """Return finished attempt records, oldest first."""
        return list(self._history)

    def get_stats(self) -> dict[str, Any]:
        """Aggregate statistics over the retained history.

        Returns:
            A dict with ``total_executions``, ``successful_executions``,
            ``failed_executions``, ``average_attempts``,
            ``average_retry_delay`` and ``circuit_breakers`` (one snapshot
            dict per breaker key).
        """
        records = list(self._history)
        total = len(records)
        successful = sum(1 for r in records if r.succeeded)
        with self._lock:
            breakers = dict(self._breakers)
        return {
            "total_executions": total,
            "successful_executions": successful,
            "failed_executions": total - successful,
            "average_attempts": (
                sum(r.attempts for r in records) / total if total else 0.0
            ),
            "average_retry_delay": (
                sum(r.total_delay for r in records) / total if total else 0.0
            ),
            "circuit_breakers": {
                name: {
                    "state": snap.state.value,
                    "failure_count": snap.failure_count,
                    "success_count": snap.success_count,
                    "rejected_calls": snap.rejected_calls,
                    "state_transitions": snap.state_transitions,
                }
                for name, snap in (
                    (name, breaker.snapshot()) for name, breaker in breakers.items()
                )
            },
        }

    def reset_stats(self) -> None:
        """Clear the history and reset every breaker."""
        self._history.clear()
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
