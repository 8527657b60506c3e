"""Example plugin that tags requests with an id and logs responses to stderr."""

from __future__ import annotations

import sys
from typing import Any

from restpipe.context import ExecutionContext
from restpipe.interceptors.base import FunctionInterceptor, Interceptor
from restpipe.models import Phase, PluginCapability, Priority
from restpipe.payload import RequestPayload, ResponsePayload
from restpipe.plugins.base import Plugin
from restpipe.plugins.context import PluginContext, PluginHealthStatus


class ExamplePlugin(Plugin):
    """Adds an ``X-Request-ID`` header and logs each response status to stderr."""

    def __init__(self) -> None:
        self._initialized = False
        self._header = "X-Request-ID"
        self._responses = 0

    @property
    def name(self) -> str:
        return "example"

    @property
    def version(self) -> str:
        return "0.1.0"

    @property
    def description(self) -> str:
        return "Example plugin that tags requests and logs response info"

    @property
    def capabilities(self) -> frozenset[PluginCapability]:
        return frozenset(
            {PluginCapability.REQUEST_INTERCEPTION, PluginCapability.RESPONSE_INTERCEPTION}
        )

    @property
    def config(self) -> dict[str, Any]:
        return {"header": "X-Request-ID"}

    def initialize(self, context: PluginContext) -> None:
        self._initialized = True

    def configure(self, config: dict[str, Any]) -> None:
        self._header = config.get("header", self._header)

    def interceptors(self) -> list[Interceptor]:
        return [
            FunctionInterceptor(
                "example-request-id",
                Phase.REQUEST,
                self._tag_request,
                priority=Priority.HIGH,
                description="Adds a request id header",
            ),
            FunctionInterceptor(
                "example-response-log",
                Phase.RESPONSE,
                self._log_response,
                priority=Priority.LOWEST,
                description="Logs the response status to stderr",
            ),
        ]

    def _tag_request(
        self, request: RequestPayload, context: ExecutionContext
    ) -> RequestPayload:
        request.headers.setdefault(self._header, context.request_id)
        print(f"[example] {request.method} {request.url}", file=sys.stderr)
        return request

    def _log_response(
        self, response: ResponsePayload, context: ExecutionContext
    ) -> ResponsePayload:
        self._responses += 1
        print(f"[example] Response: {response.status_code}", file=sys.stderr)
        return response

    def health_check(self) -> PluginHealthStatus:
        return PluginHealthStatus(
            healthy=self._initialized,
            message="ok" if self._initialized else "not initialized",
            details={"responses": self._responses},
        )

    def cleanup(self) -> None:
        self._initialized = False
