"""Exception hierarchy for restpipe.

All exceptions inherit from :class:`RestpipeError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`restpipe.exit_codes`.
The CLI entry point in :mod:`restpipe.app` catches ``RestpipeError`` and
exits with the matching code; library callers catch the narrower classes.

Subclass hierarchy::

    RestpipeError (exit 1)
    +-- ConfigError                 (exit 1)
    +-- InterceptorError            (exit 7)
    |   +-- DuplicateInterceptorError
    |   +-- InterceptorTimeoutError
    |   +-- CriticalInterceptorFailure
    |   +-- RateLimitExceededError
    +-- PluginError                 (exit 10)
    |   +-- MissingDependencyError
    |   +-- PluginHookTimeoutError
    |   +-- PluginStateError
    +-- ResilienceError
    |   +-- CircuitOpenError        (exit 8)
    |   +-- RetryExhaustedError     (exit 9)
    +-- TransportError              (exit 6)
    +-- HTTPStatusError             (exit 5)
    +-- OperationCancelledError     (exit 130)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

from restpipe.exit_codes import (
    EXIT_CANCELLED,
    EXIT_CIRCUIT_OPEN,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_HTTP_ERROR,
    EXIT_INTERCEPTOR_FAILURE,
    EXIT_PLUGIN_ERROR,
    EXIT_RETRY_EXHAUSTED,
)

if TYPE_CHECKING:
    from restpipe.payload import ResponsePayload


class RestpipeError(Exception):
    """Base exception for all restpipe errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(RestpipeError):
    """Raised for configuration problems (invalid JSON, bad credential sources)."""


# --- Interceptors ---


class InterceptorError(RestpipeError):
    """Base class for interceptor registration and execution failures."""

    exit_code = EXIT_INTERCEPTOR_FAILURE


class DuplicateInterceptorError(InterceptorError):
    """Raised when an interceptor name is already registered in its phase."""

    def __init__(self, name: str, phase: str) -> None:
        self.name = name
        self.phase = phase
        super().__init__(
            f"Interceptor '{name}' is already registered for phase '{phase}'"
        )


class InterceptorTimeoutError(InterceptorError):
    """Raised when a single interceptor does not settle within its budget."""

    def __init__(self, name: str, phase: str, timeout: float) -> None:
        self.name = name
        self.phase = phase
        self.timeout = timeout
        super().__init__(
            f"Interceptor '{name}' ({phase}) timed out after {timeout:g}s"
        )


class CriticalInterceptorFailure(InterceptorError):
    """Raised when a critical interceptor fails and aborts its chain.

    The original exception is available as :attr:`cause` (and as
    ``__cause__`` when raised with ``from``).
    """

    def __init__(self, name: str, phase: str, cause: BaseException) -> None:
        self.name = name
        self.phase = phase
        self.cause = cause
        super().__init__(
            f"Critical interceptor '{name}' failed during {phase} phase: {cause}"
        )


class RateLimitExceededError(InterceptorError):
    """Raised when a rate-limited request would have to wait too long for a slot."""

    def __init__(self, max_requests: int, window: float, wait: float) -> None:
        self.max_requests = max_requests
        self.window = window
        self.wait = wait
        super().__init__(
            f"Rate limit of {max_requests} per {window:g}s exceeded; "
            f"next slot in {wait:.2f}s"
        )


# --- Plugins ---


class PluginError(RestpipeError):
    """Raised when a plugin fails to load, change state, or run a hook."""

    exit_code = EXIT_PLUGIN_ERROR


class MissingDependencyError(PluginError):
    """Raised when a plugin declares dependencies that are not registered.

    Every missing name is listed, not just the first one found.
    """

    def __init__(self, plugin: str, missing: Sequence[str]) -> None:
        self.plugin = plugin
        self.missing = list(missing)
        super().__init__(
            f"Missing dependencies for plugin '{plugin}': {', '.join(self.missing)}"
        )


class PluginHookTimeoutError(PluginError):
    """Raised when a plugin lifecycle hook exceeds its timeout."""

    def __init__(self, plugin: str, hook: str, timeout: float) -> None:
        self.plugin = plugin
        self.hook = hook
        self.timeout = timeout
        super().__init__(
            f"Plugin '{plugin}' {hook} hook timed out after {timeout:g}s"
        )


class PluginStateError(PluginError):
    """Raised for a lifecycle transition the plugin state machine forbids."""


# --- Resilience ---


class ResilienceError(RestpipeError):
    """Base class for retry and circuit-breaker outcomes."""


class CircuitOpenError(ResilienceError):
    """Raised when the circuit breaker rejects a call without attempting it."""

    exit_code = EXIT_CIRCUIT_OPEN

    def __init__(self, breaker: str, retry_after: float = 0.0) -> None:
        self.breaker = breaker
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{breaker}' is open; retry in {max(retry_after, 0.0):.1f}s"
        )


class RetryExhaustedError(ResilienceError):
    """Raised when an operation keeps failing after every allowed attempt."""

    exit_code = EXIT_RETRY_EXHAUSTED

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} attempt(s). Last error: {last_error}"
        )


# --- Transport ---


class TransportError(RestpipeError):
    """Raised on network-level failures reported by the transport.

    ``code`` carries a transient fault code such as ``ECONNREFUSED`` so that
    retry classification works without inspecting transport internals.
    """

    exit_code = EXIT_CONNECTION_ERROR

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class HTTPStatusError(RestpipeError):
    """Raised when a response carries an error status code (>= 400)."""

    exit_code = EXIT_HTTP_ERROR

    def __init__(self, message: str, response: "ResponsePayload") -> None:
        super().__init__(message)
        self.response = response

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def data(self) -> Any:
        return self.response.data


class OperationCancelledError(RestpipeError):
    """Raised at the next chain or attempt boundary after a cancel request."""

    exit_code = EXIT_CANCELLED
