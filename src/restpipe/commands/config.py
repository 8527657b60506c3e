"""Config commands -- view and modify the persisted pipeline configuration.

Provides the ``restpipe config`` sub-command group. Settings live in
``config.json`` in the restpipe config directory and are validated against
:class:`~restpipe.models.PipelineConfig` before every save.
"""

from __future__ import annotations

from typing import Any

import typer

from restpipe.exit_codes import EXIT_INVALID_USAGE
from restpipe.output import get_output


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show(
    effective: bool = typer.Option(
        False, "--effective", help="Include RESTPIPE_* environment overrides."
    ),
) -> None:
    """Show the current configuration.

    Example::

        restpipe config show
        restpipe --json config show --effective
    """
    from restpipe.config import config_path, load_config, resolve_config

    config = resolve_config() if effective else load_config()
    output = get_output()
    output.info(f"Config file: {config_path()}")
    output.format_data(config.model_dump(mode="json"))


@config_app.command("path")
def config_path_command() -> None:
    """Print the path of the configuration file."""
    from restpipe.config import config_path

    get_output().print_data(str(config_path()))


def _coerce(current: Any, value: str) -> Any:
    """Convert *value* to the type of the setting it replaces."""
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


@config_app.command("set")
def config_set(
    key: str = typer.Argument(help="Config key in dot notation, e.g. 'retry.max_retries'."),
    value: str = typer.Argument(help="Value to set."),
) -> None:
    """Set a configuration value.

    The value is coerced to the type of the existing setting (bool, int,
    float, or a comma-separated list). The result must validate as a
    :class:`~restpipe.models.PipelineConfig` before it is saved.

    Example::

        restpipe config set retry.max_retries 5
        restpipe config set transport.base_url https://api.example.com
        restpipe config set builtins logging,retry,timeout
    """
    from restpipe.config import load_config, save_config, set_dotted
    from restpipe.exceptions import ConfigError
    from restpipe.models import PipelineConfig

    output = get_output()
    data = load_config().model_dump(mode="json")

    target: Any = data
    for part in key.split(".")[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
    final_key = key.split(".")[-1]
    if not isinstance(target, dict) or final_key not in target:
        output.error(f"Unknown config key: {key}")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    try:
        coerced = _coerce(target[final_key], value)
    except ValueError:
        output.error(f"Invalid value for {key}: {value}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    try:
        set_dotted(data, key, coerced)
        new_config = PipelineConfig.model_validate(data)
    except (ConfigError, ValueError) as exc:
        output.error(f"Validation error: {exc}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    save_config(new_config)
    output.success(f"Set {key} = {coerced}")
