"""Circuit breaker state machine.

A :class:`CircuitBreaker` protects one class of operation. It starts
``CLOSED``; ``failure_threshold`` consecutive failures open it, and while
``OPEN`` every call is rejected with :class:`~restpipe.exceptions.CircuitOpenError`
without being attempted. Once ``recovery_timeout`` seconds have passed since
the last failure, the next gate check moves it to ``HALF_OPEN`` and admits a
single trial call. ``success_threshold`` consecutive successful trial calls close it
again; a failed trial call reopens it.

All state updates are serialised with a :class:`threading.Lock` so a breaker
can be shared between event loops and worker threads. The clock is
injectable, which keeps the state machine deterministic under test.
"""

from __future__ import annotations

import inspect
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from restpipe.exceptions import CircuitOpenError
from restpipe.models import CircuitBreakerConfig, CircuitState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of a breaker, as returned by :meth:`CircuitBreaker.snapshot`."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]
    rejected_calls: int
    state_transitions: int


class CircuitBreaker:
    """Failure-counting gate in front of an operation.

    Args:
        name: Identifier used in log records and rejection errors.
        config: Thresholds; defaults to :class:`CircuitBreakerConfig`.
        clock: Monotonic time source in seconds.

    Example::

        breaker = CircuitBreaker("payments-api")
        breaker.before_call()
        try:
            result = await call_payments()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._rejected_calls = 0
        self._state_transitions = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, without applying the recovery timeout."""
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
                rejected_calls=self._rejected_calls,
                state_transitions=self._state_transitions,
            )

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._state_transitions += 1
        self._trial_in_flight = False
        if new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        logger.info(
            "Circuit '%s' %s -> %s", self.name, old_state.value, new_state.value
        )

    def _retry_after(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_time
        return max(self.config.recovery_timeout - elapsed, 0.0)

    # ------------------------------------------------------------------
    # Gate and outcome recording
    # ------------------------------------------------------------------

    def before_call(self) -> None:
        """Admit or reject the next call.

        Raises:
            CircuitOpenError: If the breaker is ``OPEN`` and the recovery
                timeout has not elapsed, or if a half-open trial call is already
                in flight.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._retry_after() > 0:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self.name, self._retry_after())
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    def reject_if_open(self) -> None:
        """Raise if the breaker is ``OPEN`` inside its recovery timeout.

        Unlike :meth:`before_call` this never moves to ``HALF_OPEN`` and
        never claims the trial slot. The rejection is counted.

        Raises:
            CircuitOpenError: If a call made now would be rejected.
        """
        with self._lock:
            if self._state == CircuitState.OPEN and self._retry_after() > 0:
                self._rejected_calls += 1
                raise CircuitOpenError(self.name, self._retry_after())

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            else:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._failure_count += 1
                self._transition_to(CircuitState.OPEN)
                return
            self._failure_count += 1
            if (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Free a half-open trial call slot without recording an outcome.

        Used when an admitted call is cancelled before it settles.
        """
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        """Force the breaker back to ``CLOSED`` and clear its counters."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False
            self._rejected_calls = 0

    async def call(
        self, operation: Callable[[], Union[Awaitable[Any], Any]]
    ) -> Any:
        """Run *operation* behind the gate and record its outcome.

        *operation* may be a plain callable or return an awaitable.

        Raises:
            CircuitOpenError: If the gate rejects the call.
        """
        self.before_call()
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release_trial()
            raise
        self.record_success()
        return result
