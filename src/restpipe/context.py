"""Per-invocation execution context and cooperative cancellation.

An :class:`ExecutionContext` is created for each pipeline invocation and
threaded by reference through every interceptor call of that invocation.
It is never shared across invocations. Interceptors communicate with the
executor through its control flags: setting :attr:`ExecutionContext.short_circuit`
stops the current chain after the step that set it, and
:attr:`ExecutionContext.cached_result` carries the value that replaces the
transport call.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from restpipe.exceptions import OperationCancelledError
from restpipe.models import Phase


class CancellationToken:
    """Thread-safe cancellation flag checked at chain and attempt boundaries.

    Example::

        token = CancellationToken()
        task = asyncio.create_task(pipeline.send(request, context=ExecutionContext(cancel=token)))
        token.cancel("user aborted")
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCancelledError` if cancellation was requested."""
        if self._event.is_set():
            message = "Operation cancelled"
            if self._reason:
                message = f"{message}: {self._reason}"
            raise OperationCancelledError(message)


@dataclass
class ExecutionContext:
    """Mutable state shared by every interceptor of one pipeline invocation.

    Attributes:
        request_id: Correlation id (uuid4 hex) used in log records.
        timestamp: Wall-clock creation time (``time.time()``).
        attempt: 1-based attempt number, advanced by the retry loop.
        metadata: Free-form values interceptors exchange (e.g. the retry
            decision, measured response time).
        variables: Test variables visible to interceptors and plugins.
        short_circuit: When set, the current chain stops after the step
            that set it.
        cached_result: Value returned instead of calling the transport when
            the request chain short-circuits.
        phase: The phase currently executing, or ``None`` between chains.
        cancel: Cooperative cancellation token.
    """

    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    attempt: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    short_circuit: bool = False
    cached_result: Any = None
    phase: Optional[Phase] = None
    cancel: CancellationToken = field(default_factory=CancellationToken)

    def check_cancelled(self) -> None:
        self.cancel.raise_if_cancelled()

    def reset_control_flags(self) -> None:
        """Clear ``short_circuit`` and ``cached_result`` before a new attempt."""
        self.short_circuit = False
        self.cached_result = None


class DeadlineExceeded(Exception):
    """Raised by :func:`run_with_deadline` when the call outlives its budget.

    Distinct from :class:`TimeoutError`, so a timeout raised inside the
    callee's own work is reported as the callee's failure rather than as an
    expired deadline.
    """

    def __init__(self, timeout: Optional[float]) -> None:
        super().__init__(f"Deadline of {timeout}s exceeded")
        self.timeout = timeout


async def run_with_deadline(
    func: Callable[..., Any], *args: Any, timeout: Optional[float]
) -> Any:
    """Call ``func(*args)`` and wait at most *timeout* seconds for the result.

    Coroutine functions are awaited on the running loop. Plain callables run
    in a worker thread via :func:`asyncio.to_thread`, so blocking code can
    neither stall the loop nor outrun the deadline; an awaitable they return
    is awaited under the same deadline.

    On expiry the pending work is cancelled and :class:`DeadlineExceeded` is
    raised. A worker thread cannot be interrupted: it runs to completion and
    its result is discarded.
    """

    async def call() -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(*args)
        result = await asyncio.to_thread(func, *args)
        if inspect.isawaitable(result):
            result = await result
        return result

    task = asyncio.ensure_future(call())
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        raise DeadlineExceeded(timeout)
    return task.result()
