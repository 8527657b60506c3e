"""restpipe -- Request/response processing core for API test automation.

This package provides the pipeline that sits between a test runner and an
HTTP transport: ordered interceptor chains for each request phase, a plugin
lifecycle manager that contributes interceptors as units, and a resilience
layer that retries failed operations behind a circuit breaker.

Typical usage::

    from restpipe import Pipeline, RequestPayload

    async with Pipeline() as pipeline:
        response = await pipeline.send(RequestPayload("GET", "https://api.example.com/health"))

Modules:
    app: Typer CLI for exercising a pipeline from the shell.
    models: Pydantic configuration models and shared enums.
    config: XDG-aware configuration loading and credential resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes used by the CLI.
    output: stdout/stderr formatting system with Rich support.
    pipeline: The :class:`Pipeline` facade tying all components together.
"""

__version__ = "0.3.0"

from restpipe.context import CancellationToken, ExecutionContext  # noqa: E402
from restpipe.payload import RequestPayload, ResponsePayload  # noqa: E402
from restpipe.pipeline import Pipeline  # noqa: E402

__all__ = [
    "__version__",
    "CancellationToken",
    "ExecutionContext",
    "Pipeline",
    "RequestPayload",
    "ResponsePayload",
]
