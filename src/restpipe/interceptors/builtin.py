"""Built-in interceptors.

Each class here is an ordinary :class:`~restpipe.interceptors.base.Interceptor`
that a :class:`~restpipe.pipeline.Pipeline` registers on start when its
:class:`~restpipe.models.BuiltinType` appears in
:attr:`~restpipe.models.PipelineConfig.builtins`. They can equally be
constructed and registered by hand.

Request phase:
    :class:`AuthenticationInterceptor`, :class:`RequestValidationInterceptor`,
    :class:`CacheInterceptor`, :class:`RateLimitingInterceptor`,
    :class:`TimeoutInterceptor`, :class:`UserAgentInterceptor`,
    :class:`CompressionInterceptor`, :class:`RequestLoggingInterceptor`.

Response phase:
    :class:`ResponseLoggingInterceptor`, :class:`ResponseValidationInterceptor`,
    :class:`ResponseTimeInterceptor`, :class:`CacheStoreInterceptor`,
    :class:`MonitoringInterceptor`.

Error phase:
    :class:`RetryInterceptor`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Any, Iterable, Optional

from restpipe.cache import ResponseCache
from restpipe.context import ExecutionContext
from restpipe.exceptions import ConfigError, RateLimitExceededError
from restpipe.interceptors.base import Interceptor
from restpipe.models import BuiltinType, Phase, PipelineConfig, Priority, RetryPolicy
from restpipe.payload import RequestPayload, ResponsePayload
from restpipe.resilience.backoff import compute_delay, should_retry

logger = logging.getLogger(__name__)

BUILTIN_GROUP = "builtin"

REQUEST_STARTED_KEY = "request_started_at"
RESPONSE_TIME_KEY = "response_time"
CACHE_KEY = "cache_key"
CACHE_HIT_KEY = "cache_hit"
RETRY_DECISION_KEY = "retry_decision"
"""Context metadata key holding the retry interceptor's verdict for the current error."""


class _Builtin(Interceptor):
    """Shared plumbing: fixed name/phase/priority set by each subclass."""

    _name: str = ""
    _phase: Phase = Phase.REQUEST
    _priority: int = Priority.NORMAL
    _critical: bool = False
    _description: str = ""

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
        return BUILTIN_GROUP

    @property
    def description(self) -> str:
        return self._description


# ------------------------------------------------------------------
# Request phase
# ------------------------------------------------------------------


class AuthenticationInterceptor(_Builtin):
    """Adds credentials to every request.

    Either static *headers* are merged in, or a token is sent as
    ``<header>: <scheme> <token>``. The token is taken from *token*, or
    resolved once from *credential_source* (``env:VAR`` or ``file:/path``)
    on first use. Headers already present on the request are left alone.

    Args:
        headers: Static headers to add.
        token: Literal token.
        credential_source: Source descriptor for
            :func:`~restpipe.config.resolve_credential`.
        scheme: Authorization scheme; empty string sends the bare token.
        header: Header carrying the token.
    """

    _name = "authentication"
    _priority = Priority.HIGHEST
    _critical = True
    _description = "Adds authentication headers to requests"

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        token: Optional[str] = None,
        credential_source: Optional[str] = None,
        scheme: str = "Bearer",
        header: str = "Authorization",
    ) -> None:
        if not headers and token is None and credential_source is None:
            raise ConfigError(
                "Authentication interceptor needs headers, a token, or a credential source"
            )
        self._headers = dict(headers or {})
        self._token = token
        self._credential_source = credential_source
        self._scheme = scheme
        self._header = header

    def _resolve_token(self) -> Optional[str]:
        if self._token is None and self._credential_source is not None:
            from restpipe.config import resolve_credential

            self._token = resolve_credential(self._credential_source)
        return self._token

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        for key, value in self._headers.items():
            if request.header(key) is None:
                request.headers[key] = value
        token = self._resolve_token()
        if token is not None and request.header(self._header) is None:
            request.headers[self._header] = (
                f"{self._scheme} {token}" if self._scheme else token
            )
        return request


class RequestValidationInterceptor(_Builtin):
    """Rejects malformed requests before they reach the transport.

    A request is invalid when its URL is empty, its method is not in
    *allowed_methods*, it carries both ``json`` and ``content``, or
    *require_https* is set and an absolute URL is not ``https``.
    """

    _name = "request-validation"
    _priority = Priority.HIGH
    _critical = True
    _description = "Validates request method, URL and body"

    DEFAULT_METHODS = frozenset(
        {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
    )

    def __init__(
        self,
        allowed_methods: Optional[Iterable[str]] = None,
        require_https: bool = False,
    ) -> None:
        self._allowed = (
            frozenset(m.upper() for m in allowed_methods)
            if allowed_methods is not None
            else self.DEFAULT_METHODS
        )
        self._require_https = require_https

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        if not request.url:
            raise ValueError("Request URL is empty")
        if request.method not in self._allowed:
            raise ValueError(f"HTTP method '{request.method}' is not allowed")
        if request.json is not None and request.content is not None:
            raise ValueError("Request cannot carry both a JSON body and raw content")
        if (
            self._require_https
            and "://" in request.url
            and not request.url.lower().startswith("https://")
        ):
            raise ValueError(f"Insecure URL rejected: {request.url}")
        return request


class CacheInterceptor(_Builtin):
    """Serves GET requests from a :class:`~restpipe.cache.ResponseCache`.

    On a hit the cached response is placed in ``context.cached_result`` and
    the chain is short-circuited, so the transport and the response chain
    are skipped.
    """

    _name = "cache"
    _priority = Priority.HIGH - 10
    _description = "Returns cached responses for GET requests"

    def __init__(self, cache: ResponseCache) -> None:
        self._cache = cache

    def condition(self, context: ExecutionContext) -> bool:
        return self._cache.enabled

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        context.metadata[CACHE_KEY] = ResponseCache.make_key(request)
        cached = self._cache.get(request)
        if cached is not None:
            logger.debug("Cache hit for %s %s", request.method, request.url)
            cached.request = request
            context.metadata[CACHE_HIT_KEY] = True
            context.cached_result = cached
            context.short_circuit = True
        return request


class RateLimitingInterceptor(_Builtin):
    """Limits throughput to *max_requests* per sliding *window* seconds.

    Each request reserves the earliest free send slot, then waits for it
    outside the lock, so concurrent senders queue in arrival order. A
    request whose slot is more than *max_wait* seconds away is rejected
    with :class:`~restpipe.exceptions.RateLimitExceededError` without
    taking a slot. The interceptor is critical: a rejection or a timeout
    aborts the request instead of letting it through unthrottled.
    """

    _name = "rate-limiting"
    _priority = Priority.HIGH - 20
    _critical = True
    _description = "Enforces a sliding-window request rate limit"

    def __init__(
        self, max_requests: int = 100, window: float = 60.0, max_wait: float = 300.0
    ) -> None:
        if max_requests < 1:
            raise ConfigError("max_requests must be at least 1")
        self._max_requests = max_requests
        self._window = window
        self._max_wait = max_wait
        # send times of the last max_requests reservations, possibly in the future
        self._slots: deque[float] = deque(maxlen=max_requests)
        self._lock = threading.Lock()

    @property
    def timeout(self) -> Optional[float]:
        return self._max_wait + 1.0

    def _reserve(self) -> float:
        """Claim the next send slot and return how long to wait for it."""
        with self._lock:
            now = time.monotonic()
            slot = now
            if len(self._slots) == self._max_requests:
                slot = max(now, self._slots[0] + self._window)
            wait = slot - now
            if wait > self._max_wait:
                raise RateLimitExceededError(self._max_requests, self._window, wait)
            self._slots.append(slot)
            return wait

    async def intercept(
        self, request: RequestPayload, context: ExecutionContext
    ) -> RequestPayload:
        wait = self._reserve()
        if wait > 0:
            logger.debug("Rate limit reached; waiting %.2fs", wait)
            await asyncio.sleep(wait)
        return request


class TimeoutInterceptor(_Builtin):
    """Sets a default request timeout where the caller gave none."""

    _name = "timeout"
    _description = "Applies a default request timeout"

    def __init__(self, timeout: float = 30.0) -> None:
        self._timeout_value = timeout

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        if request.timeout is None:
            request.timeout = self._timeout_value
        return request


class UserAgentInterceptor(_Builtin):
    _name = "user-agent"
    _description = "Sets the User-Agent header"

    def __init__(self, user_agent: str = "restpipe") -> None:
        self._user_agent = user_agent

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        if request.header("User-Agent") is None:
            request.headers["User-Agent"] = self._user_agent
        return request


class CompressionInterceptor(_Builtin):
    _name = "compression"
    _priority = Priority.LOW
    _description = "Advertises accepted response encodings"

    def __init__(self, encodings: str = "gzip, deflate") -> None:
        self._encodings = encodings

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        if request.header("Accept-Encoding") is None:
            request.headers["Accept-Encoding"] = self._encodings
        return request


def _redact(headers: dict[str, str]) -> dict[str, str]:
    secret = {"authorization", "proxy-authorization", "cookie", "x-api-key"}
    return {k: ("***" if k.lower() in secret else v) for k, v in headers.items()}


class RequestLoggingInterceptor(_Builtin):
    """Logs the outgoing request and stamps its start time in the context.

    Runs last in the request chain so it logs what is actually sent.
    Credential headers are redacted.
    """

    _name = "request-logging"
    _priority = Priority.LOWEST
    _description = "Logs outgoing requests"

    def __init__(
        self,
        level: int = logging.INFO,
        include_headers: bool = False,
        include_body: bool = False,
    ) -> None:
        self._level = level
        self._include_headers = include_headers
        self._include_body = include_body

    def intercept(self, request: RequestPayload, context: ExecutionContext) -> RequestPayload:
        context.metadata[REQUEST_STARTED_KEY] = time.perf_counter()
        logger.log(
            self._level,
            "[%s] -> %s %s (attempt %d)",
            context.request_id[:8],
            request.method,
            request.url,
            context.attempt,
        )
        if self._include_headers:
            logger.log(self._level, "[%s] headers: %s", context.request_id[:8], _redact(request.headers))
        if self._include_body and request.json is not None:
            logger.log(self._level, "[%s] body: %s", context.request_id[:8], request.json)
        return request


# ------------------------------------------------------------------
# Response phase
# ------------------------------------------------------------------


class ResponseLoggingInterceptor(_Builtin):
    _name = "response-logging"
    _phase = Phase.RESPONSE
    _priority = Priority.HIGHEST
    _description = "Logs received responses"

    def __init__(self, level: int = logging.INFO, include_body: bool = False) -> None:
        self._level = level
        self._include_body = include_body

    def intercept(self, response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
        logger.log(
            self._level,
            "[%s] <- %d (%.1f ms)",
            context.request_id[:8],
            response.status_code,
            response.elapsed * 1000,
        )
        if self._include_body:
            logger.log(self._level, "[%s] body: %s", context.request_id[:8], response.data)
        return response


class ResponseValidationInterceptor(_Builtin):
    """Checks status code and content type of every response.

    Args:
        expected_statuses: Allowed status codes; ``None`` accepts any.
        content_type: Required substring of the ``Content-Type`` header.
        critical: Abort the response chain on a mismatch instead of
            logging it.
    """

    _name = "response-validation"
    _phase = Phase.RESPONSE
    _priority = Priority.HIGH
    _description = "Validates response status and content type"

    def __init__(
        self,
        expected_statuses: Optional[Iterable[int]] = None,
        content_type: Optional[str] = None,
        critical: bool = False,
    ) -> None:
        self._expected = frozenset(expected_statuses) if expected_statuses else None
        self._content_type = content_type
        self._critical = critical

    def intercept(self, response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
        if self._expected is not None and response.status_code not in self._expected:
            raise ValueError(
                f"Unexpected status {response.status_code}; "
                f"expected one of {sorted(self._expected)}"
            )
        if self._content_type is not None:
            actual = response.header("Content-Type") or ""
            if self._content_type.lower() not in actual.lower():
                raise ValueError(
                    f"Unexpected content type '{actual}'; expected '{self._content_type}'"
                )
        return response


class ResponseTimeInterceptor(_Builtin):
    """Records the response time in ``context.metadata`` and flags slow calls."""

    _name = "response-time"
    _phase = Phase.RESPONSE
    _priority = Priority.HIGH + 10
    _description = "Measures response time"

    def __init__(self, warn_threshold: Optional[float] = None) -> None:
        self._warn_threshold = warn_threshold

    def intercept(self, response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
        started = context.metadata.get(REQUEST_STARTED_KEY)
        elapsed = response.elapsed
        if not elapsed and started is not None:
            elapsed = time.perf_counter() - started
        context.metadata[RESPONSE_TIME_KEY] = elapsed
        if self._warn_threshold is not None and elapsed > self._warn_threshold:
            logger.warning(
                "[%s] slow response: %.2fs (threshold %.2fs)",
                context.request_id[:8],
                elapsed,
                self._warn_threshold,
            )
        return response


class CacheStoreInterceptor(_Builtin):
    """Writes successful GET responses to the :class:`~restpipe.cache.ResponseCache`."""

    _name = "cache-store"
    _phase = Phase.RESPONSE
    _priority = Priority.LOW
    _description = "Stores responses in the response cache"

    def __init__(self, cache: ResponseCache) -> None:
        self._cache = cache

    def condition(self, context: ExecutionContext) -> bool:
        return self._cache.enabled and not context.metadata.get(CACHE_HIT_KEY)

    def intercept(self, response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
        if response.request is not None:
            self._cache.set(response.request, response)
        return response


class MonitoringInterceptor(_Builtin):
    """Collects request counts by status class and response time totals."""

    _name = "monitoring"
    _phase = Phase.RESPONSE
    _priority = Priority.LOWEST
    _description = "Collects response metrics"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = 0
        self._by_status: dict[str, int] = {}
        self._total_time = 0.0
        self._max_time = 0.0

    def intercept(self, response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
        elapsed = context.metadata.get(RESPONSE_TIME_KEY, response.elapsed)
        status_class = f"{response.status_code // 100}xx"
        with self._lock:
            self._total += 1
            self._by_status[status_class] = self._by_status.get(status_class, 0) + 1
            self._total_time += elapsed
            self._max_time = max(self._max_time, elapsed)
        return response

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_responses": self._total,
                "by_status": dict(self._by_status),
                "average_response_time": (
                    self._total_time / self._total if self._total else 0.0
                ),
                "max_response_time": self._max_time,
            }

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._by_status.clear()
            self._total_time = 0.0
            self._max_time = 0.0


# ------------------------------------------------------------------
# Error phase
# ------------------------------------------------------------------


class RetryInterceptor(_Builtin):
    """Decides whether the failed attempt should be retried.

    The verdict, together with the planned delay, is stored under
    :data:`RETRY_DECISION_KEY` in ``context.metadata``; the pipeline's retry
    loop uses it in place of its default classification. The error itself
    is passed on unchanged.
    """

    _name = "retry"
    _phase = Phase.ERROR
    _priority = Priority.HIGH
    _description = "Classifies failed attempts for retry"

    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self._policy = policy or RetryPolicy()

    def intercept(self, error: BaseException, context: ExecutionContext) -> None:
        retry = should_retry(error, context.attempt, self._policy)
        context.metadata[RETRY_DECISION_KEY] = {
            "retry": retry,
            "attempt": context.attempt,
            "delay": compute_delay(context.attempt, self._policy) if retry else 0.0,
        }
        logger.debug(
            "[%s] attempt %d failed with %s: retry=%s",
            context.request_id[:8],
            context.attempt,
            type(error).__name__,
            retry,
        )
        return None


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------


def create_builtin(builtin: BuiltinType | str, **options: Any) -> list[Interceptor]:
    """Create the interceptor(s) for one :class:`~restpipe.models.BuiltinType`.

    Some types contribute a request/response pair (``logging``,
    ``validation``, ``caching``), so a list is always returned. Options are
    passed to the constructors; ``caching`` requires ``cache=ResponseCache``.

    Raises:
        ConfigError: For unknown types or missing required options.
    """
    try:
        kind = BuiltinType(builtin)
    except ValueError:
        raise ConfigError(f"Unknown built-in interceptor: {builtin}") from None

    if kind == BuiltinType.AUTHENTICATION:
        return [AuthenticationInterceptor(**options)]
    if kind == BuiltinType.LOGGING:
        level = options.get("level", logging.INFO)
        return [
            RequestLoggingInterceptor(
                level=level,
                include_headers=options.get("include_headers", False),
                include_body=options.get("include_body", False),
            ),
            ResponseLoggingInterceptor(level=level, include_body=options.get("include_body", False)),
        ]
    if kind == BuiltinType.RETRY:
        return [RetryInterceptor(options.get("policy"))]
    if kind == BuiltinType.TIMEOUT:
        return [TimeoutInterceptor(**options)]
    if kind == BuiltinType.USER_AGENT:
        return [UserAgentInterceptor(**options)]
    if kind == BuiltinType.COMPRESSION:
        return [CompressionInterceptor(**options)]
    if kind == BuiltinType.VALIDATION:
        return [
            RequestValidationInterceptor(
                allowed_methods=options.get("allowed_methods"),
                require_https=options.get("require_https", False),
            ),
            ResponseValidationInterceptor(
                expected_statuses=options.get("expected_statuses"),
                content_type=options.get("content_type"),
            ),
        ]
    if kind == BuiltinType.CACHING:
        cache = options.get("cache")
        if cache is None:
            raise ConfigError("The caching built-in requires a 'cache' option")
        return [CacheInterceptor(cache), CacheStoreInterceptor(cache)]
    if kind == BuiltinType.RATE_LIMITING:
        return [RateLimitingInterceptor(**options)]
    if kind == BuiltinType.RESPONSE_TIME:
        return [ResponseTimeInterceptor(**options)]
    return [MonitoringInterceptor()]


def create_default_builtins(
    config: Optional[PipelineConfig] = None, cache: Optional[ResponseCache] = None
) -> list[Interceptor]:
    """Create the built-ins listed in ``config.builtins``, configured from *config*.

    ``authentication`` is skipped (with a debug record) when no
    ``auth_source`` is configured. ``caching`` opens a
    :class:`~restpipe.cache.ResponseCache` in the configured or XDG cache
    directory unless *cache* is given.
    """
    config = config or PipelineConfig()
    interceptors: list[Interceptor] = []
    for kind in config.builtins:
        if kind == BuiltinType.AUTHENTICATION:
            if config.auth_source is None:
                logger.debug("No auth_source configured; skipping authentication built-in")
                continue
            interceptors += create_builtin(kind, credential_source=config.auth_source)
        elif kind == BuiltinType.RETRY:
            interceptors += create_builtin(kind, policy=config.retry)
        elif kind == BuiltinType.TIMEOUT:
            interceptors += create_builtin(kind, timeout=config.transport.timeout)
        elif kind == BuiltinType.USER_AGENT:
            interceptors += create_builtin(kind, user_agent=config.user_agent)
        elif kind == BuiltinType.CACHING:
            if cache is None:
                from restpipe.config import get_cache_dir

                directory = config.cache.directory or get_cache_dir()
                cache = ResponseCache(directory, config.cache)
            interceptors += create_builtin(kind, cache=cache)
        else:
            interceptors += create_builtin(kind)
    return interceptors
