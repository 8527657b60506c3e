"""Abstract base class for interceptors.

An interceptor is one step of a phase chain. It receives the current payload
(a request, a response, or an error, depending on its :attr:`Interceptor.phase`)
together with the shared :class:`~restpipe.context.ExecutionContext`, and
returns the payload for the next step.

Subclasses must implement :attr:`Interceptor.name`, :attr:`Interceptor.phase`
and :meth:`Interceptor.intercept`. Everything else has a default, so an
interceptor only overrides what it needs. :meth:`intercept` may be a plain
method or a coroutine function.

Example:
    Minimal request interceptor::

        class TraceHeader(Interceptor):
            @property
            def name(self) -> str:
                return "trace-header"

            @property
            def phase(self) -> Phase:
                return Phase.REQUEST

            def intercept(self, request, context):
                request.headers["X-Request-Id"] = context.request_id
                return request
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from restpipe.context import ExecutionContext
from restpipe.models import Phase, Priority


class Interceptor(ABC):
    """Base class for all interceptors.

    The attributes read at registration time (:attr:`priority`,
    :attr:`enabled`, :attr:`critical`, :attr:`group`) are defaults only;
    :meth:`~restpipe.interceptors.registry.InterceptorRegistry.register`
    can override each of them per registration.

    Return value of :meth:`intercept` by phase:

    * ``REQUEST`` / ``RESPONSE`` -- the payload for the next step. Returning
      ``None`` keeps the (possibly mutated) copy the interceptor received.
    * ``ERROR`` -- a transformed exception, a recovery value (a
      :class:`~restpipe.payload.ResponsePayload` or anything shaped like a
      response) which stops the chain, or ``None`` to leave the error as is.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the interceptor name, unique within its phase."""
        ...

    @property
    @abstractmethod
    def phase(self) -> Phase:
        """Return the phase whose chain this interceptor belongs to."""
        ...

    @property
    def priority(self) -> int:
        """Ordering key; higher runs first. Defaults to :attr:`Priority.NORMAL`."""
        return Priority.NORMAL

    @property
    def enabled(self) -> bool:
        return True

    @property
    def critical(self) -> bool:
        """Whether a failure aborts the chain. Ignored for the error phase."""
        return False

    @property
    def group(self) -> Optional[str]:
        return None

    @property
    def description(self) -> str:
        return ""

    @property
    def timeout(self) -> Optional[float]:
        """Per-interceptor timeout in seconds; ``None`` uses the registry default."""
        return None

    def condition(self, context: ExecutionContext) -> bool:
        """Return ``False`` to skip this interceptor for the current invocation."""
        return True

    @abstractmethod
    def intercept(self, payload: Any, context: ExecutionContext) -> Any:
        """Process *payload* and return the value for the next step."""
        ...

    def on_error(self, error: BaseException, context: ExecutionContext) -> None:
        """Called after :meth:`intercept` failed or timed out.

        Exceptions raised here are logged and swallowed by the executor so
        they never mask the original failure.
        """

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} ({self.phase.value})>"


InterceptFunc = Callable[[Any, ExecutionContext], Union[Any, Awaitable[Any]]]


class FunctionInterceptor(Interceptor):
    """Adapts a plain callable ``(payload, context) -> payload`` to :class:`Interceptor`.

    Args:
        name: Interceptor name.
        phase: Chain the callable runs in.
        func: Sync or async callable.
        priority: Ordering key.
        critical: Abort the chain on failure.
        group: Optional group for batch enable/disable.
        description: Free-form description shown in summaries.
        timeout: Per-interceptor timeout override in seconds.
        condition: Optional predicate over the execution context.
    """

    def __init__(
        self,
        name: str,
        phase: Phase,
        func: InterceptFunc,
        *,
        priority: int = Priority.NORMAL,
        critical: bool = False,
        group: Optional[str] = None,
        description: str = "",
        timeout: Optional[float] = None,
        condition: Optional[Callable[[ExecutionContext], bool]] = None,
    ) -> None:
        self._name = name
        self._phase = Phase(phase)
        self._func = func
        self._priority = int(priority)
        self._critical = critical
        self._group = group
        self._description = description
        self._timeout = timeout
        self._condition = condition

    @property
    def name(self) -> str:
        return self._name

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def critical(self) -> bool:
        return self._critical

    @property
    def group(self) -> Optional[str]:
        return self._group

    @property
    def description(self) -> str:
        return self._description

    @property
    def timeout(self) -> Optional[float]:
        return self._timeout

    def condition(self, context: ExecutionContext) -> bool:
        if self._condition is None:
            return True
        return bool(self._condition(context))

    def intercept(self, payload: Any, context: ExecutionContext) -> Any:
        return self._func(payload, context)
