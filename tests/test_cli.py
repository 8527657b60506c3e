"""Tests for the restpipe command line interface."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import httpx
import pytest

from restpipe.app import app
from restpipe.config import load_config
from restpipe.models import PipelineConfig
from restpipe.pipeline import Pipeline
from restpipe.transport import HttpxTransport


URL = "https://api.example.com/users/1"

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def mock_api(isolated_config: Path, monkeypatch: pytest.MonkeyPatch):
    """Route ``restpipe request`` through a MockTransport answering with *handler*."""

    def install(handler: Handler) -> list[httpx.Request]:
        seen: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        def create_pipeline(config: PipelineConfig) -> Pipeline:
            client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
            return Pipeline(config, HttpxTransport(client=client))

        monkeypatch.setattr("restpipe.commands.request.create_pipeline", create_pipeline)
        return seen

    return install


# ---------------------------------------------------------------------------
# Root callback
# ---------------------------------------------------------------------------


class TestRoot:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "restpipe 0.3.0" in result.output

    def test_no_args_shows_help(self, cli_runner) -> None:
        result = cli_runner.invoke(app, [])
        assert "request" in result.output
        assert "plugins" in result.output


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


class TestConfigCommands:
    def test_path(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "path"])
        assert result.exit_code == 0
        assert result.output.strip() == str(
            isolated_config / "config" / "restpipe" / "config.json"
        )

    def test_set_int(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "retry.max_retries", "5"])
        assert result.exit_code == 0
        assert "Set retry.max_retries = 5" in result.output
        assert load_config().retry.max_retries == 5

    def test_set_bool_and_list(self, cli_runner, isolated_config: Path) -> None:
        cli_runner.invoke(app, ["config", "set", "transport.verify_ssl", "no"])
        cli_runner.invoke(app, ["config", "set", "builtins", "logging, retry"])
        config = load_config()
        assert config.transport.verify_ssl is False
        assert [b.value for b in config.builtins] == ["logging", "retry"]

    def test_set_unknown_key(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "retry.attempts", "5"])
        assert result.exit_code == 2
        assert "Unknown config key: retry.attempts" in result.output

    def test_set_bad_value(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "retry.max_retries", "many"])
        assert result.exit_code == 2
        assert "Invalid value for retry.max_retries" in result.output

    def test_set_fails_validation(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["config", "set", "builtins", "teleport"])
        assert result.exit_code == 2
        assert "Validation error" in result.output
        assert not (isolated_config / "config" / "restpipe" / "config.json").exists()

    def test_show_effective(
        self, cli_runner, isolated_config: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("RESTPIPE_MAX_RETRIES", "1")
        result = cli_runner.invoke(app, ["--quiet", "--json", "config", "show", "--effective"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["retry"]["max_retries"] == 1

        result = cli_runner.invoke(app, ["--quiet", "--json", "config", "show"])
        assert json.loads(result.stdout)["retry"]["max_retries"] == 3


# ---------------------------------------------------------------------------
# plugins / builtins
# ---------------------------------------------------------------------------


class TestListings:
    def test_no_plugins(self, cli_runner, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("restpipe.commands.request.iter_entry_points", lambda: [])
        result = cli_runner.invoke(app, ["plugins"])
        assert result.exit_code == 0
        assert "No plugins installed." in result.output

    def test_builtins(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(app, ["--plain", "builtins"])
        assert result.exit_code == 0
        assert "logging\tyes" in result.output
        assert "caching\tno" in result.output
        assert "authentication\tno" in result.output


# ---------------------------------------------------------------------------
# request
# ---------------------------------------------------------------------------


class TestRequest:
    def test_success(self, cli_runner, mock_api) -> None:
        seen = mock_api(lambda request: httpx.Response(200, json={"id": 1, "name": "ada"}))

        result = cli_runner.invoke(
            app,
            [
                "--quiet",
                "--json",
                "request",
                "GET",
                URL,
                "-H",
                "X-Trace: abc",
                "-P",
                "expand=team",
                "--no-plugins",
            ],
        )

        assert result.exit_code == 0
        document = json.loads(result.stdout)
        assert document["status_code"] == 200
        assert document["data"] == {"id": 1, "name": "ada"}
        assert seen[0].headers["x-trace"] == "abc"
        assert seen[0].url.params["expand"] == "team"
        assert seen[0].headers["user-agent"].startswith("restpipe")

    def test_json_body(self, cli_runner, mock_api) -> None:
        seen = mock_api(lambda request: httpx.Response(201, json={"id": 2}))

        result = cli_runner.invoke(
            app, ["--quiet", "request", "POST", URL, "-d", '{"name": "bo"}', "--no-plugins"]
        )

        assert result.exit_code == 0
        assert json.loads(seen[0].content) == {"name": "bo"}

    def test_error_status_exit_code(self, cli_runner, mock_api) -> None:
        mock_api(lambda request: httpx.Response(404, json={"error": "not found"}))

        result = cli_runner.invoke(app, ["--plain", "request", "GET", URL, "--no-plugins"])

        assert result.exit_code == 5
        assert "HTTP 404" in result.output
        assert "not found" in result.output

    def test_network_failure(self, cli_runner, mock_api) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        seen = mock_api(refuse)

        result = cli_runner.invoke(
            app, ["--plain", "request", "GET", URL, "--retries", "0", "--no-plugins"]
        )

        assert result.exit_code == 9
        assert "Operation failed after 1 attempt(s)" in result.output
        assert len(seen) == 1

    def test_bad_header(self, cli_runner, mock_api) -> None:
        seen = mock_api(lambda request: httpx.Response(200))

        result = cli_runner.invoke(app, ["request", "GET", URL, "-H", "no-colon"])

        assert result.exit_code == 2
        assert "Expected 'Name: value'" in result.output
        assert seen == []
