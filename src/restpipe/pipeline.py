"""Pipeline facade -- interceptors, plugins, resilience, and transport in one object.

:class:`Pipeline` owns one :class:`~restpipe.interceptors.InterceptorRegistry`,
one :class:`~restpipe.plugins.PluginManager` on top of it, one
:class:`~restpipe.resilience.RetryExecutor`, and a
:class:`~restpipe.transport.Transport`. :meth:`Pipeline.send` runs the full
flow for one request::

    for each attempt (retry loop, guarded by a circuit breaker per host):
        request chain  -> short-circuit with cached_result? return it
        transport.send -> status >= 400 raised as HTTPStatusError
        response chain -> return the final response
        on failure:
            error chain -> recovery value? return it as the response
                        -> otherwise raise the (transformed) error

Built-in interceptors named in ``config.builtins`` are registered by
:meth:`Pipeline.start`, which ``async with`` calls for you.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from restpipe.cache import ResponseCache
from restpipe.context import ExecutionContext
from restpipe.exceptions import (
    CriticalInterceptorFailure,
    HTTPStatusError,
    OperationCancelledError,
)
from restpipe.interceptors.base import Interceptor
from restpipe.interceptors.builtin import RETRY_DECISION_KEY, create_default_builtins
from restpipe.interceptors.registry import ChainResult, InterceptorRegistry
from restpipe.models import BuiltinType, CircuitState, Phase, PipelineConfig, RetryPolicy
from restpipe.payload import RequestPayload, ResponsePayload
from restpipe.plugins.base import Plugin
from restpipe.plugins.context import PluginRegistryEntry, PluginServices
from restpipe.plugins.manager import PluginManager
from restpipe.resilience.retry import RetryExecutor
from restpipe.transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)

Operation = Callable[[], Union[Any, Awaitable[Any]]]

# Raised straight through the retry loop instead of being retried.
_PASSTHROUGH = (OperationCancelledError, CriticalInterceptorFailure)


class Pipeline:
    """Request/response pipeline with interceptors, plugins, and retries.

    Args:
        config: Pipeline configuration; defaults to :class:`PipelineConfig`.
        transport: Transport to send requests through. When ``None``, an
            :class:`~restpipe.transport.HttpxTransport` is built from
            ``config.transport`` on first use and closed on shutdown.
        services: Service bundle handed to plugins. ``config``,
            ``http_client`` and ``register_interceptor`` are filled in when
            unset.
        cache: Response cache for the ``caching`` built-in. When ``None``
            and caching is configured, one is opened on :meth:`start`.

    Example::

        async with Pipeline(config) as pipeline:
            await pipeline.register_plugin(TracePlugin())
            response = await pipeline.send(RequestPayload("GET", "/users"))
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        transport: Optional[Transport] = None,
        services: Optional[PluginServices] = None,
        *,
        cache: Optional[ResponseCache] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.registry = InterceptorRegistry(self.config.interceptors)
        self._transport = transport
        self._owns_transport = transport is None
        self._cache = cache
        self._owns_cache = cache is None

        self.services = services or PluginServices()
        if self.services.config is None:
            self.services.config = self.config
        if self.services.register_interceptor is None:
            self.services.register_interceptor = self.register_interceptor
        if self.services.http_client is None:
            self.services.http_client = transport

        self.plugins = PluginManager(
            self.registry, self.services, self.config.plugin_manager
        )
        self.retry = RetryExecutor(self.config.retry, self.config.circuit_breaker)
        self._builtin_ids: list[str] = []
        self._started = False
        self._requests = {
            "total": 0,
            "succeeded": 0,
            "failed": 0,
            "short_circuited": 0,
            "recovered": 0,
            "total_duration": 0.0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.shutdown()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = HttpxTransport.from_config(self.config.transport)
            self.services.http_client = self._transport
        return self._transport

    @property
    def cache(self) -> Optional[ResponseCache]:
        return self._cache

    async def start(self) -> None:
        """Register the configured built-ins and start periodic health checks."""
        if self._started:
            return
        if BuiltinType.CACHING in self.config.builtins and self._cache is None:
            from restpipe.config import get_cache_dir

            directory = self.config.cache.directory or get_cache_dir()
            self._cache = ResponseCache(directory, self.config.cache)
        for interceptor in create_default_builtins(self.config, self._cache):
            self._builtin_ids.append(self.registry.register(interceptor))
        self.plugins.start_health_checks()
        self._started = True
        logger.debug(
            "Pipeline started with %d built-in interceptor(s)", len(self._builtin_ids)
        )

    async def shutdown(self) -> None:
        """Unload plugins, remove built-ins, and close owned resources."""
        await self.plugins.shutdown()
        for entry_id in self._builtin_ids:
            self.registry.unregister(entry_id)
        self._builtin_ids.clear()
        if self._owns_transport and isinstance(self._transport, HttpxTransport):
            await self._transport.aclose()
            self._transport = None
        if self._owns_cache and self._cache is not None:
            self._cache.close()
            self._cache = None
        self._started = False

    async def discover_plugins(self) -> list[str]:
        """Register plugins found in the ``restpipe.plugins`` entry-point group."""
        return await self.plugins.discover(self.config)

    # ------------------------------------------------------------------
    # Interceptors
    # ------------------------------------------------------------------

    def register_interceptor(self, interceptor: Interceptor, **options: Any) -> str:
        """Register *interceptor*; keyword options as for :meth:`InterceptorRegistry.register`."""
        return self.registry.register(interceptor, **options)

    def unregister_interceptor(self, entry_id: str) -> bool:
        return self.registry.unregister(entry_id) > 0

    def enable_interceptor(self, entry_id: str) -> bool:
        return self.registry.enable(entry_id)

    def disable_interceptor(self, entry_id: str) -> bool:
        return self.registry.disable(entry_id)

    # ------------------------------------------------------------------
    # Plugins
    # ------------------------------------------------------------------

    async def register_plugin(
        self, plugin: Plugin, plugin_config: Optional[dict[str, Any]] = None
    ) -> PluginRegistryEntry:
        """Register *plugin*, merging ``config.plugin_config[name]`` under *plugin_config*."""
        merged = {
            **self.config.plugin_config.get(plugin.name, {}),
            **(plugin_config or {}),
        }
        return await self.plugins.register_plugin(plugin, merged)

    async def unregister_plugin(self, name: str) -> None:
        await self.plugins.unregister_plugin(name)

    async def enable_plugin(self, name: str) -> None:
        await self.plugins.enable_plugin(name)

    async def disable_plugin(self, name: str) -> None:
        await self.plugins.disable_plugin(name)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_chain(
        self, phase: Phase, payload: Any, context: Optional[ExecutionContext] = None
    ) -> ChainResult:
        """Run a single phase chain outside of :meth:`send`."""
        return await self.registry.run_chain(phase, payload, context or ExecutionContext())

    async def execute(
        self,
        operation: Operation,
        retry_policy: Optional[RetryPolicy] = None,
        key: str = "default",
    ) -> Any:
        """Run an arbitrary operation under the retry executor and breaker *key*."""
        return await self.retry.execute(operation, retry_policy, key=key)

    async def send(
        self,
        request: RequestPayload,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        context: Optional[ExecutionContext] = None,
        key: Optional[str] = None,
    ) -> ResponsePayload:
        """Send *request* through the chains, the transport, and the retry loop.

        A request chain that sets ``context.short_circuit`` without a
        ``context.cached_result`` only skips the remaining request
        interceptors. The payload built so far still goes to the transport.

        Args:
            request: The request; never mutated, each attempt starts from it.
            retry_policy: Overrides ``config.retry`` for this call.
            context: Execution context; a fresh one is created when omitted.
                Cancel ``context.cancel`` to stop at the next boundary.
            key: Circuit-breaker key; defaults to the request's host.

        Returns:
            The final response, a cached response, or a recovery response
            produced by the error chain.

        Raises:
            RetryExhaustedError: The last attempt failed and no retry
                followed; ``last_error`` holds the (transformed) error.
            CircuitOpenError: The breaker for *key* rejected the first attempt.
            CriticalInterceptorFailure: A critical interceptor failed.
            OperationCancelledError: The context was cancelled.
        """
        context = context or ExecutionContext()
        key = key or _breaker_key(request)
        attempts = 0

        async def attempt() -> ResponsePayload:
            nonlocal attempts
            attempts += 1
            context.attempt = attempts
            context.reset_control_flags()
            context.metadata.pop(RETRY_DECISION_KEY, None)
            return await self._attempt(request, context)

        def decide(error: BaseException, attempt_number: int) -> Optional[bool]:
            decision = context.metadata.get(RETRY_DECISION_KEY)
            if isinstance(decision, Mapping) and decision.get("attempt") == attempt_number:
                return bool(decision.get("retry"))
            return None

        self._requests["total"] += 1
        started = time.perf_counter()
        try:
            response = await self.retry.execute(
                attempt,
                retry_policy or self.config.retry,
                key=key,
                cancel=context.cancel,
                decide=decide,
                passthrough=_PASSTHROUGH,
            )
        except Exception:
            self._requests["failed"] += 1
            raise
        finally:
            self._requests["total_duration"] += time.perf_counter() - started
        self._requests["succeeded"] += 1
        return response

    async def _attempt(
        self, request: RequestPayload, context: ExecutionContext
    ) -> ResponsePayload:
        prepared = request
        try:
            chain = await self.registry.run_chain(Phase.REQUEST, request, context)
            prepared = chain.payload
            if chain.short_circuited and context.cached_result is not None:
                self._requests["short_circuited"] += 1
                return _as_response(context.cached_result, prepared)

            response = await self.transport.send(prepared)
            if response.status_code >= 400 and self.config.transport.raise_for_status:
                raise HTTPStatusError(
                    f"HTTP {response.status_code} from {prepared.method} {prepared.url}",
                    response,
                )
            outcome = await self.registry.run_chain(Phase.RESPONSE, response, context)
            return outcome.payload
        except _PASSTHROUGH:
            raise
        except Exception as exc:
            outcome = await self.registry.run_chain(Phase.ERROR, exc, context)
            if outcome.recovered:
                self._requests["recovered"] += 1
                logger.info(
                    "[%s] error recovered by error chain: %s", context.request_id[:8], exc
                )
                return _as_response(outcome.payload, prepared)
            error = outcome.payload
            if error is exc:
                raise
            raise error from exc

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _request_stats(self) -> dict[str, Any]:
        stats = dict(self._requests)
        total = stats["total"]
        stats["average_duration"] = stats["total_duration"] / total if total else 0.0
        stats["success_rate"] = stats["succeeded"] / total if total else 0.0
        return stats

    def get_statistics(self) -> dict[str, Any]:
        return {
            "requests": self._request_stats(),
            "interceptors": self.registry.get_global_statistics(),
            "plugins": {
                name: stats.to_dict()
                for name, stats in self.plugins.get_all_plugin_statistics().items()
            },
            "retry": self.retry.get_stats(),
        }

    def get_summary(self) -> dict[str, Any]:
        """Interceptor and plugin counts, performance figures, and health roll-up."""
        breakers = self.retry.get_stats()["circuit_breakers"]
        return {
            "interceptors": self.registry.get_summary(),
            "plugins": self.plugins.get_summary(),
            "performance": {
                **self._request_stats(),
                **{
                    k: v
                    for k, v in self.registry.get_global_statistics().items()
                    if k in ("error_rate", "average_duration", "total_executions")
                },
            },
            "health": {
                "started": self._started,
                "health_checks_running": self.plugins.health_checks_running,
                "open_circuits": sorted(
                    key
                    for key, snapshot in breakers.items()
                    if snapshot["state"] == CircuitState.OPEN.value
                ),
            },
        }

    async def check_health(self) -> dict[str, Any]:
        """Check every plugin and report circuit-breaker states.

        The pipeline is healthy when every plugin is healthy and no circuit
        is open.
        """
        plugins = await self.plugins.check_all_plugin_health()
        breakers = {
            key: snapshot["state"]
            for key, snapshot in self.retry.get_stats()["circuit_breakers"].items()
        }
        healthy = all(status.healthy for status in plugins.values()) and all(
            state != CircuitState.OPEN.value for state in breakers.values()
        )
        return {
            "healthy": healthy,
            "plugins": {name: status.to_dict() for name, status in plugins.items()},
            "circuit_breakers": breakers,
        }


def _breaker_key(request: RequestPayload) -> str:
    try:
        host = httpx.URL(request.url).host
    except httpx.InvalidURL:
        host = ""
    return host or "default"


def _as_response(value: Any, request: RequestPayload) -> ResponsePayload:
    """Wrap a cached or recovered value as a response for *request*."""
    if isinstance(value, ResponsePayload):
        return value
    if isinstance(value, Mapping) and ("status_code" in value or "status" in value):
        raw = dict(value)
        raw.setdefault("status_code", raw.get("status"))
        response = ResponsePayload.from_dict(raw)
    elif hasattr(value, "status_code") and hasattr(value, "data"):
        response = ResponsePayload(status_code=int(value.status_code), data=value.data)
    else:
        response = ResponsePayload(status_code=200, data=value)
    response.request = request
    return response
