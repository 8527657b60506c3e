"""Pipeline commands -- send a request, list plugins and built-ins.

``restpipe request`` builds a :class:`~restpipe.pipeline.Pipeline` from the
effective configuration, registers the discovered plugins, and sends one
request through it. It is a developer tool for trying interceptor and
plugin setups from the shell.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer

from restpipe.config import resolve_config
from restpipe.exceptions import HTTPStatusError, RestpipeError, RetryExhaustedError
from restpipe.exit_codes import EXIT_HTTP_ERROR, EXIT_INVALID_USAGE
from restpipe.models import BuiltinType, PipelineConfig
from restpipe.output import get_output
from restpipe.payload import RequestPayload, ResponsePayload
from restpipe.pipeline import Pipeline
from restpipe.plugins.manager import iter_entry_points


def create_pipeline(config: PipelineConfig) -> Pipeline:
    """Build the pipeline used by ``restpipe request``."""
    return Pipeline(config)


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"Expected 'Name: value', got: {raw}")
        headers[name.strip()] = value.strip()
    return headers


def _parse_params(values: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected 'key=value', got: {raw}")
        params[key] = value
    return params


def _parse_body(body: Optional[str]) -> tuple[Any, Optional[str]]:
    """Return ``(json, content)``; text that is not JSON is sent raw."""
    if body is None:
        return None, None
    try:
        return json.loads(body), None
    except json.JSONDecodeError:
        return None, body


async def _send(
    config: PipelineConfig, request: RequestPayload, load_plugins: bool
) -> ResponsePayload:
    async with create_pipeline(config) as pipeline:
        if load_plugins:
            loaded = await pipeline.discover_plugins()
            if loaded:
                get_output().debug(f"Loaded plugins: {', '.join(loaded)}")
        return await pipeline.send(request)


def request_command(
    method: str = typer.Argument(help="HTTP method, e.g. GET or POST."),
    url: str = typer.Argument(help="Absolute URL, or a path under transport.base_url."),
    header: list[str] = typer.Option(
        [], "--header", "-H", help="Request header as 'Name: value'. Repeatable."
    ),
    param: list[str] = typer.Option(
        [], "--param", "-P", help="Query parameter as key=value. Repeatable."
    ),
    json_body: Optional[str] = typer.Option(
        None, "--json-body", "-d", help="Request body; sent as JSON when it parses."
    ),
    include: bool = typer.Option(
        False, "--include", "-i", help="Show response headers."
    ),
    retries: Optional[int] = typer.Option(
        None, "--retries", min=0, help="Override retry.max_retries."
    ),
    no_plugins: bool = typer.Option(
        False, "--no-plugins", help="Do not load entry-point plugins."
    ),
) -> None:
    """Send one request through the configured pipeline.

    Example::

        restpipe request GET https://httpbin.org/get -P q=1
        restpipe request POST /users -d '{"name": "ada"}' -H 'X-Trace: 1'
    """
    output = get_output()
    try:
        headers = _parse_headers(header)
        params = _parse_params(param)
    except typer.BadParameter as exc:
        output.error(str(exc))
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    try:
        config = resolve_config()
        if retries is not None:
            config.retry = config.retry.model_copy(update={"max_retries": retries})
        body, content = _parse_body(json_body)
        request = RequestPayload(
            method, url, headers=headers, params=params, json=body, content=content
        )
        response = asyncio.run(_send(config, request, load_plugins=not no_plugins))
    except RetryExhaustedError as exc:
        if not isinstance(exc.last_error, HTTPStatusError):
            output.error(str(exc))
            raise typer.Exit(code=exc.exit_code) from None
        response = exc.last_error.response
        if exc.attempts > 1:
            output.warning(f"Giving up after {exc.attempts} attempts")
    except RestpipeError as exc:
        output.error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    output.print_response(response, show_headers=include)
    if response.is_error:
        raise typer.Exit(code=EXIT_HTTP_ERROR)


def plugins_command() -> None:
    """List plugins registered in the ``restpipe.plugins`` entry-point group."""
    output = get_output()
    rows: list[list[str]] = []
    for ep in iter_entry_points():
        try:
            plugin = ep.load()()
            rows.append([plugin.name, plugin.version, ep.value, plugin.description])
        except Exception as exc:
            rows.append([ep.name, "-", ep.value, f"failed to load: {exc}"])
    if not rows:
        output.info("No plugins installed.")
        return
    output.print_table(["Name", "Version", "Entry point", "Description"], rows, title="Plugins")


def builtins_command() -> None:
    """List the built-in interceptors and whether the configuration enables them."""
    config = resolve_config()
    enabled = set(config.builtins)
    rows = [
        [kind.value, "yes" if kind in enabled else "no"] for kind in BuiltinType
    ]
    get_output().print_table(["Built-in", "Enabled"], rows, title="Built-in interceptors")
