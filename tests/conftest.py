"""Shared test fixtures for restpipe.

Provides reusable fixtures for isolated config environments, output state,
pipelines wired to an in-memory HTTP transport, and CLI invocation. These
fixtures are discovered by pytest automatically and available to all test
modules without explicit imports.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from restpipe.config import ENV_OVERRIDES
from restpipe.context import ExecutionContext
from restpipe.interceptors.registry import InterceptorRegistry
from restpipe.models import InterceptorConfig, PipelineConfig, RetryPolicy
from restpipe.output import reset_output
from restpipe.payload import RequestPayload
from restpipe.transport import HttpxTransport


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The manager's consoles hold on to the streams that were current when it
    was created; CliRunner swaps those streams per invocation.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points XDG_CONFIG_HOME, XDG_CACHE_HOME and XDG_DATA_HOME at
    subdirectories of tmp_path, clears every RESTPIPE_* override and
    changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Core objects
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> InterceptorRegistry:
    return InterceptorRegistry(InterceptorConfig(timeout=1.0))


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext()


@pytest.fixture
def request_payload() -> RequestPayload:
    return RequestPayload("get", "https://api.example.com/users", params={"page": 1})


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """A retry policy that never waits long enough to slow the suite down."""
    return RetryPolicy(
        max_retries=2,
        retry_delay=0.001,
        jitter=False,
        min_retry_delay=0.0,
        max_retry_delay=0.01,
    )


@pytest.fixture
def pipeline_config(isolated_config: Path, fast_retry: RetryPolicy) -> PipelineConfig:
    """A config with no built-ins and fast retries."""
    return PipelineConfig(builtins=[], retry=fast_retry)


# ---------------------------------------------------------------------------
# HTTP mocking
# ---------------------------------------------------------------------------


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def make_transport() -> Callable[[Handler], HttpxTransport]:
    """Build an :class:`HttpxTransport` whose client answers with *handler*."""

    def factory(handler: Handler, **kwargs: Any) -> HttpxTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)
        return HttpxTransport(client=client)

    return factory


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner capturing stdout and stderr separately."""
    from typer.testing import CliRunner

    return CliRunner()
