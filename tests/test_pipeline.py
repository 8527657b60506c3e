"""End-to-end tests for Pipeline.send over an in-memory HTTP transport."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from restpipe import Pipeline
from restpipe.context import ExecutionContext
from restpipe.exceptions import (
    CircuitOpenError,
    CriticalInterceptorFailure,
    HTTPStatusError,
    OperationCancelledError,
    RetryExhaustedError,
    TransportError,
)
from restpipe.interceptors.base import FunctionInterceptor
from restpipe.interceptors.builtin import RETRY_DECISION_KEY
from restpipe.models import (
    BuiltinType,
    CircuitBreakerConfig,
    Phase,
    PipelineConfig,
    PluginCapability,
    Priority,
)
from restpipe.payload import RequestPayload, ResponsePayload
from restpipe.plugins.base import Plugin


URL = "https://api.example.com/users/1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedHandler:
    """MockTransport handler replaying *responses* in order (last one repeats).

    An exception instance in the script is raised instead of answered.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        outcome = self.responses[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self) -> int:
        return len(self.requests)


class HeaderPlugin(Plugin):
    """Adds a configurable header to every request."""

    def __init__(self) -> None:
        self.header = "X-Plugin"

    @property
    def name(self) -> str:
        return "header"

    @property
    def capabilities(self) -> frozenset[PluginCapability]:
        return frozenset({PluginCapability.REQUEST_INTERCEPTION})

    def configure(self, config: dict[str, Any]) -> None:
        self.header = config.get("header", self.header)

    def interceptors(self):
        def add(request: RequestPayload, context: ExecutionContext) -> RequestPayload:
            request.headers[self.header] = "on"
            return request

        return [FunctionInterceptor("plugin-header", Phase.REQUEST, add)]


def _json(status: int, body: Any = None) -> httpx.Response:
    return httpx.Response(status, json=body if body is not None else {"status": status})


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_success(self, pipeline_config: PipelineConfig, make_transport) -> None:
        handler = ScriptedHandler(_json(200, {"id": 1}))

        async with Pipeline(pipeline_config, make_transport(handler)) as pipeline:
            response = await pipeline.send(RequestPayload("GET", URL))

        assert response.status_code == 200
        assert response.data == {"id": 1}
        assert response.request.url == URL
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_chains_shape_request_and_response(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200, {"id": 1}))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        def add_header(request: RequestPayload, context: ExecutionContext) -> RequestPayload:
            request.headers["X-Trace"] = context.request_id
            return request

        def unwrap(response: ResponsePayload, context: ExecutionContext) -> ResponsePayload:
            response.data = {"wrapped": response.data}
            return response

        pipeline.register_interceptor(FunctionInterceptor("trace", Phase.REQUEST, add_header))
        pipeline.register_interceptor(FunctionInterceptor("wrap", Phase.RESPONSE, unwrap))
        request = RequestPayload("GET", URL)
        context = ExecutionContext()

        response = await pipeline.send(request, context=context)

        assert handler.requests[0].headers["X-Trace"] == context.request_id
        assert response.data == {"wrapped": {"id": 1}}
        assert request.headers == {}

    @pytest.mark.asyncio
    async def test_json_body_sent(self, pipeline_config: PipelineConfig, make_transport) -> None:
        handler = ScriptedHandler(_json(201, {"id": 2}))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        response = await pipeline.send(RequestPayload("POST", URL, json={"name": "ada"}))

        assert response.status_code == 201
        assert json.loads(handler.requests[0].content) == {"name": "ada"}

    @pytest.mark.asyncio
    async def test_statistics(self, pipeline_config: PipelineConfig, make_transport) -> None:
        handler = ScriptedHandler(_json(200))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        await pipeline.send(RequestPayload("GET", URL))
        await pipeline.send(RequestPayload("GET", URL))

        stats = pipeline.get_statistics()
        assert stats["requests"]["total"] == 2
        assert stats["requests"]["succeeded"] == 2
        assert stats["requests"]["success_rate"] == 1.0
        assert stats["retry"]["total_executions"] == 2
        assert "api.example.com" in stats["retry"]["circuit_breakers"]


# ---------------------------------------------------------------------------
# Retries and failures
# ---------------------------------------------------------------------------


class TestRetries:
    @pytest.mark.asyncio
    async def test_server_error_then_success(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(500), _json(200, {"ok": True}))
        pipeline = Pipeline(pipeline_config, make_transport(handler))
        context = ExecutionContext()

        response = await pipeline.send(RequestPayload("GET", URL), context=context)

        assert response.data == {"ok": True}
        assert handler.calls == 2
        assert context.attempt == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(404, {"detail": "missing"}))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await pipeline.send(RequestPayload("GET", URL))

        error = exc_info.value.last_error
        assert isinstance(error, HTTPStatusError)
        assert error.status_code == 404
        assert error.data == {"detail": "missing"}
        assert exc_info.value.attempts == 1
        assert handler.calls == 1
        assert pipeline.get_statistics()["requests"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_raise_for_status_off(self, isolated_config: Path, make_transport) -> None:
        config = PipelineConfig(builtins=[], transport={"raise_for_status": False})
        pipeline = Pipeline(config, make_transport(ScriptedHandler(_json(404))))

        response = await pipeline.send(RequestPayload("GET", URL))

        assert response.status_code == 404
        assert response.is_error

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, pipeline_config: PipelineConfig, make_transport) -> None:
        handler = ScriptedHandler(_json(503))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await pipeline.send(RequestPayload("GET", URL))

        assert exc_info.value.attempts == 3
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_network_error_mapped_and_retried(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(httpx.ConnectError("connection refused"))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await pipeline.send(RequestPayload("GET", URL))

        error = exc_info.value.last_error
        assert isinstance(error, TransportError)
        assert error.code == "ECONNREFUSED"
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_retry_decision_from_error_chain_wins(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(503))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        def never_retry(error: BaseException, context: ExecutionContext) -> None:
            context.metadata[RETRY_DECISION_KEY] = {"retry": False, "attempt": context.attempt}

        pipeline.register_interceptor(FunctionInterceptor("veto", Phase.ERROR, never_retry))

        with pytest.raises(RetryExhaustedError):
            await pipeline.send(RequestPayload("GET", URL))
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_retry_builtin(self, isolated_config: Path, fast_retry, make_transport) -> None:
        config = PipelineConfig(builtins=[BuiltinType.RETRY], retry=fast_retry)
        handler = ScriptedHandler(_json(502), _json(200))

        async with Pipeline(config, make_transport(handler)) as pipeline:
            response = await pipeline.send(RequestPayload("GET", URL))

        assert response.status_code == 200
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_circuit_opens(self, isolated_config: Path, fast_retry, make_transport) -> None:
        config = PipelineConfig(
            builtins=[],
            retry=fast_retry,
            circuit_breaker=CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60),
        )
        handler = ScriptedHandler(_json(503))
        pipeline = Pipeline(config, make_transport(handler))

        with pytest.raises(RetryExhaustedError):
            await pipeline.send(RequestPayload("GET", URL))
        with pytest.raises(CircuitOpenError):
            await pipeline.send(RequestPayload("GET", URL))

        assert handler.calls == 1
        assert pipeline.get_summary()["health"]["open_circuits"] == ["api.example.com"]
        health = await pipeline.check_health()
        assert health["healthy"] is False
        assert health["circuit_breakers"] == {"api.example.com": "open"}

    @pytest.mark.asyncio
    async def test_critical_failure_not_retried(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        def reject(request: RequestPayload, context: ExecutionContext) -> None:
            raise PermissionError("no token")

        pipeline.register_interceptor(
            FunctionInterceptor("gate", Phase.REQUEST, reject), critical=True
        )

        with pytest.raises(CriticalInterceptorFailure) as exc_info:
            await pipeline.send(RequestPayload("GET", URL))

        assert isinstance(exc_info.value.cause, PermissionError)
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_before_send(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200))
        pipeline = Pipeline(pipeline_config, make_transport(handler))
        context = ExecutionContext()
        context.cancel.cancel("test over")

        with pytest.raises(OperationCancelledError):
            await pipeline.send(RequestPayload("GET", URL), context=context)
        assert handler.calls == 0


# ---------------------------------------------------------------------------
# Error chain recovery and caching
# ---------------------------------------------------------------------------


class TestShortCircuits:
    @pytest.mark.asyncio
    async def test_error_chain_recovery(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(httpx.ConnectError("refused"))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        def fallback(error: BaseException, context: ExecutionContext) -> dict:
            return {"status": 200, "data": {"fallback": True}}

        pipeline.register_interceptor(FunctionInterceptor("fallback", Phase.ERROR, fallback))

        response = await pipeline.send(RequestPayload("GET", URL))

        assert response.status_code == 200
        assert response.data == {"fallback": True}
        assert response.request.url == URL
        assert handler.calls == 1
        assert pipeline.get_statistics()["requests"]["recovered"] == 1

    @pytest.mark.asyncio
    async def test_error_chain_transform(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        pipeline = Pipeline(pipeline_config, make_transport(ScriptedHandler(_json(404))))

        def translate(error: BaseException, context: ExecutionContext) -> BaseException:
            return LookupError("user not found")

        pipeline.register_interceptor(FunctionInterceptor("translate", Phase.ERROR, translate))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await pipeline.send(RequestPayload("GET", URL))

        last = exc_info.value.last_error
        assert isinstance(last, LookupError)
        assert isinstance(last.__cause__, HTTPStatusError)

    @pytest.mark.asyncio
    async def test_cached_response_skips_transport(
        self, isolated_config: Path, make_transport
    ) -> None:
        config = PipelineConfig(
            builtins=[BuiltinType.CACHING],
            cache={"directory": str(isolated_config / "responses-cache")},
        )
        handler = ScriptedHandler(_json(200, {"id": 7}))

        async with Pipeline(config, make_transport(handler)) as pipeline:
            seen: list[int] = []
            pipeline.register_interceptor(
                FunctionInterceptor(
                    "spy",
                    Phase.RESPONSE,
                    lambda r, c: seen.append(r.status_code),
                    priority=Priority.LOWEST,
                )
            )
            first = await pipeline.send(RequestPayload("GET", URL))
            second = await pipeline.send(RequestPayload("GET", URL))
            assert pipeline.cache is not None

        assert first.data == second.data == {"id": 7}
        assert handler.calls == 1
        assert seen == [200]
        assert pipeline.get_statistics()["requests"]["short_circuited"] == 1

    @pytest.mark.asyncio
    async def test_short_circuit_with_plain_value(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200))
        pipeline = Pipeline(pipeline_config, make_transport(handler))

        def stub(request: RequestPayload, context: ExecutionContext) -> RequestPayload:
            context.cached_result = ["stubbed"]
            context.short_circuit = True
            return request

        pipeline.register_interceptor(FunctionInterceptor("stub", Phase.REQUEST, stub))

        response = await pipeline.send(RequestPayload("GET", URL))

        assert response.status_code == 200
        assert response.data == ["stubbed"]
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_short_circuit_without_cached_result_still_sends(
        self, pipeline_config: PipelineConfig, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200, {"id": 1}))
        pipeline = Pipeline(pipeline_config, make_transport(handler))
        later: list[str] = []

        def stop_early(request: RequestPayload, context: ExecutionContext) -> RequestPayload:
            request.headers["X-Stopped"] = "yes"
            context.short_circuit = True
            return request

        pipeline.register_interceptor(
            FunctionInterceptor("stop", Phase.REQUEST, stop_early, priority=Priority.HIGH)
        )
        pipeline.register_interceptor(
            FunctionInterceptor(
                "after", Phase.REQUEST, lambda r, c: later.append("after"), priority=Priority.LOW
            )
        )

        response = await pipeline.send(RequestPayload("GET", URL))

        assert response.data == {"id": 1}
        assert handler.calls == 1
        assert handler.requests[0].headers["X-Stopped"] == "yes"
        assert later == []
        assert pipeline.get_statistics()["requests"]["short_circuited"] == 0


# ---------------------------------------------------------------------------
# Lifecycle, plugins, and observability
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_builtins(self, isolated_config: Path, make_transport) -> None:
        transport = make_transport(ScriptedHandler(_json(200)))
        pipeline = Pipeline(PipelineConfig(), transport)

        await pipeline.start()
        await pipeline.start()
        assert pipeline.started is True
        assert len(pipeline.registry) == 9
        assert pipeline.services.config is pipeline.config
        assert pipeline.services.http_client is transport

        await pipeline.shutdown()
        assert pipeline.started is False
        assert len(pipeline.registry) == 0

    @pytest.mark.asyncio
    async def test_builtins_shape_outgoing_request(
        self, isolated_config: Path, make_transport
    ) -> None:
        handler = ScriptedHandler(_json(200))
        config = PipelineConfig(user_agent="suite/2.0")

        async with Pipeline(config, make_transport(handler)) as pipeline:
            await pipeline.send(RequestPayload("GET", URL))
            metrics_summary = pipeline.get_summary()

        sent = handler.requests[0]
        assert sent.headers["User-Agent"] == "suite/2.0"
        assert sent.headers["Accept-Encoding"] == "gzip, deflate"
        assert metrics_summary["interceptors"]["groups"] == {"builtin": 9}
        assert metrics_summary["performance"]["total"] == 1

    @pytest.mark.asyncio
    async def test_plugin_through_pipeline(self, isolated_config: Path, make_transport) -> None:
        handler = ScriptedHandler(_json(200))
        config = PipelineConfig(builtins=[], plugin_config={"header": {"header": "X-From-Config"}})

        async with Pipeline(config, make_transport(handler)) as pipeline:
            await pipeline.register_plugin(HeaderPlugin())
            await pipeline.send(RequestPayload("GET", URL))

            await pipeline.disable_plugin("header")
            await pipeline.send(RequestPayload("GET", URL))

            stats = pipeline.get_statistics()["plugins"]["header"]
            health = await pipeline.check_health()

        assert handler.requests[0].headers["X-From-Config"] == "on"
        assert "X-From-Config" not in handler.requests[1].headers
        assert stats["interceptor_executions"] == 1
        assert health["plugins"]["header"]["healthy"] is False
        assert len(pipeline.plugins) == 0

    @pytest.mark.asyncio
    async def test_interceptor_toggles(self, pipeline_config: PipelineConfig, make_transport) -> None:
        handler = ScriptedHandler(_json(200))
        pipeline = Pipeline(pipeline_config, make_transport(handler))
        entry_id = pipeline.register_interceptor(
            FunctionInterceptor(
                "tag",
                Phase.REQUEST,
                lambda r, c: r.headers.update({"X-Tag": "1"}),
            )
        )

        assert pipeline.disable_interceptor(entry_id) is True
        await pipeline.send(RequestPayload("GET", URL))
        assert pipeline.enable_interceptor(entry_id) is True
        await pipeline.send(RequestPayload("GET", URL))
        assert pipeline.unregister_interceptor(entry_id) is True
        assert pipeline.unregister_interceptor(entry_id) is False

        assert "X-Tag" not in handler.requests[0].headers
        assert handler.requests[1].headers["X-Tag"] == "1"

    @pytest.mark.asyncio
    async def test_execute_and_run_chain(self, pipeline_config: PipelineConfig) -> None:
        pipeline = Pipeline(pipeline_config)
        attempts = {"n": 0}

        def flaky() -> str:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise ConnectionError("reset")
            return "done"

        assert await pipeline.execute(flaky, key="jobs") == "done"
        chain = await pipeline.run_chain(Phase.REQUEST, RequestPayload("GET", "/x"))
        assert chain.payload.url == "/x"
