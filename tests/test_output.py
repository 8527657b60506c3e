"""Tests for restpipe.output -- format resolution and stream routing."""

from __future__ import annotations

import json

import pytest

from restpipe.output import (
    OutputFormat,
    OutputManager,
    get_output,
    reset_output,
    set_output,
)
from restpipe.payload import ResponsePayload


@pytest.fixture(autouse=True)
def _clean_color_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.setenv("TERM", "xterm")


# ---------------------------------------------------------------------------
# Format resolution
# ---------------------------------------------------------------------------


class TestFormatResolution:
    def test_auto_is_plain_when_piped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("restpipe.output._stdout_is_tty", lambda: False)
        assert OutputManager().format == OutputFormat.PLAIN

    def test_auto_is_rich_on_tty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("restpipe.output._stdout_is_tty", lambda: True)
        assert OutputManager().format == OutputFormat.RICH

    def test_no_color_env_forces_plain(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("restpipe.output._stdout_is_tty", lambda: True)
        monkeypatch.setenv("NO_COLOR", "")
        assert OutputManager().format == OutputFormat.PLAIN

    def test_dumb_terminal_forces_plain(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("restpipe.output._stdout_is_tty", lambda: True)
        monkeypatch.setenv("TERM", "dumb")
        assert OutputManager().format == OutputFormat.PLAIN

    def test_explicit_format_kept(self) -> None:
        assert OutputManager(format=OutputFormat.JSON).format == OutputFormat.JSON


# ---------------------------------------------------------------------------
# Data on stdout
# ---------------------------------------------------------------------------


class TestData:
    def test_json_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.JSON).format_data({"id": 1})
        captured = capsys.readouterr()
        assert json.loads(captured.out) == {"id": 1}
        assert captured.err == ""

    def test_json_string_is_parsed(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.JSON).format_data('[1, 2]')
        assert json.loads(capsys.readouterr().out) == [1, 2]

    def test_plain_dict(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.PLAIN).format_data({"name": "ada", "tags": ["a"]})
        assert capsys.readouterr().out.splitlines() == [
            "name\tada",
            'tags\t[',
            '  "a"',
            "]",
        ]

    def test_plain_list(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.PLAIN).format_data(["x", 2])
        assert capsys.readouterr().out.splitlines() == ["x", "2"]

    def test_table_plain(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.PLAIN).print_table(
            ["NAME", "STATUS"], [["trace", "active"]]
        )
        assert capsys.readouterr().out.splitlines() == ["NAME\tSTATUS", "trace\tactive"]

    def test_table_json(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.JSON).print_table(
            ["name", "status"], [["trace", "active"]]
        )
        assert json.loads(capsys.readouterr().out) == [{"name": "trace", "status": "active"}]


class TestPrintResponse:
    def test_json_document(self, capsys: pytest.CaptureFixture[str]) -> None:
        response = ResponsePayload(
            200, headers={"content-type": "application/json"}, data={"id": 1}, elapsed=0.01234
        )
        OutputManager(format=OutputFormat.JSON).print_response(response)
        document = json.loads(capsys.readouterr().out)
        assert document == {
            "status_code": 200,
            "headers": {"content-type": "application/json"},
            "data": {"id": 1},
            "elapsed": 0.0123,
        }

    def test_plain_status_on_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        response = ResponsePayload(201, headers={"x-id": "7"}, data="created", elapsed=0.5)
        OutputManager(format=OutputFormat.PLAIN, no_color=True).print_response(
            response, show_headers=True
        )
        captured = capsys.readouterr()
        assert captured.out == "created\n"
        assert "HTTP 201 (500 ms)" in captured.err
        assert "x-id: 7" in captured.err

    def test_error_status_is_warning(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.PLAIN, no_color=True).print_response(
            ResponsePayload(404)
        )
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Warning: HTTP 404" in captured.err


# ---------------------------------------------------------------------------
# Diagnostics on stderr
# ---------------------------------------------------------------------------


class TestDiagnostics:
    def test_quiet_suppresses_info_not_errors(self, capsys: pytest.CaptureFixture[str]) -> None:
        output = OutputManager(format=OutputFormat.PLAIN, no_color=True, quiet=True)
        output.info("hidden")
        output.success("hidden too")
        output.warning("careful")
        output.error("broken")

        err = capsys.readouterr().err
        assert "hidden" not in err
        assert "Warning: careful" in err
        assert "Error: broken" in err

    def test_debug_needs_verbose(self, capsys: pytest.CaptureFixture[str]) -> None:
        OutputManager(format=OutputFormat.PLAIN, no_color=True).debug("quiet note")
        assert capsys.readouterr().err == ""

        OutputManager(format=OutputFormat.PLAIN, no_color=True, verbose=True).debug("loud note")
        assert "[debug] loud note" in capsys.readouterr().err


class TestGlobalInstance:
    def test_set_get_reset(self) -> None:
        output = OutputManager(format=OutputFormat.JSON)
        set_output(output)
        assert get_output() is output

        reset_output()
        assert get_output() is not output
