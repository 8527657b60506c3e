"""Configuration for restpipe: where it lives, how it is layered, how it is saved.

* :func:`get_config_dir`, :func:`get_cache_dir` and :func:`get_data_dir`
  follow the XDG base directories on Linux and the BSDs and use a single
  ``~/.restpipe/`` tree everywhere else.
* :func:`load_config` / :func:`save_config` read and write one
  :class:`~restpipe.models.PipelineConfig` JSON document. Saves go through
  :func:`_atomic_write`, so a crash mid-save leaves the old file intact.
* :func:`resolve_config` layers ``RESTPIPE_*`` environment variables (see
  :data:`ENV_OVERRIDES`) over the file over the model defaults.
* :func:`resolve_credential` turns ``env:``/``file:`` descriptors into the
  secret the authentication built-in sends.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from restpipe.exceptions import ConfigError
from restpipe.models import PipelineConfig

_APP_NAME = "restpipe"
_CONFIG_FILENAME = "config.json"

ENV_OVERRIDES: dict[str, str] = {
    "RESTPIPE_BASE_URL": "transport.base_url",
    "RESTPIPE_TIMEOUT": "transport.timeout",
    "RESTPIPE_VERIFY_SSL": "transport.verify_ssl",
    "RESTPIPE_MAX_RETRIES": "retry.max_retries",
    "RESTPIPE_RETRY_DELAY": "retry.retry_delay",
    "RESTPIPE_INTERCEPTOR_TIMEOUT": "interceptors.timeout",
    "RESTPIPE_PLUGIN_TIMEOUT": "plugin_manager.plugin_timeout",
    "RESTPIPE_ENVIRONMENT": "plugin_manager.environment",
    "RESTPIPE_CACHE_ENABLED": "cache.enabled",
    "RESTPIPE_USER_AGENT": "user_agent",
    "RESTPIPE_AUTH_SOURCE": "auth_source",
}
"""Environment variables that override config-file values, by dotted key."""


# --- Directories ---

# kind -> (XDG variable, default under $HOME, subdirectory of ~/.restpipe)
_DIRS: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    "config": ("XDG_CONFIG_HOME", (".config",), ()),
    "cache": ("XDG_CACHE_HOME", (".cache",), ("cache",)),
    "data": ("XDG_DATA_HOME", (".local", "share"), ("logs",)),
}


def _is_xdg_platform() -> bool:
    system = platform.system()
    return system == "Linux" or system.endswith("BSD")


def _app_dir(kind: str) -> Path:
    """Resolve and create the restpipe directory of the given *kind*."""
    env_var, home_default, fallback = _DIRS[kind]
    if _is_xdg_platform():
        root = os.environ.get(env_var) or str(Path.home().joinpath(*home_default))
        path = Path(root) / _APP_NAME
    else:
        path = Path.home().joinpath(f".{_APP_NAME}", *fallback)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    """Directory holding ``config.json``.

    ``$XDG_CONFIG_HOME/restpipe`` (default ``~/.config/restpipe``) on XDG
    platforms, ``~/.restpipe`` elsewhere.
    """
    return _app_dir("config")


def get_cache_dir() -> Path:
    """Default home of the response cache; safe to delete at any time."""
    return _app_dir("cache")


def get_data_dir() -> Path:
    """Directory for crash logs."""
    return _app_dir("data")


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Replace *path* with *data* in one rename.

    The text is written to a sibling temp file, flushed to disk, then moved
    over *path* with :func:`os.replace`. If anything fails the temp file is
    removed and *path* keeps its previous content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# --- Pipeline config ---


def config_path() -> Path:
    """Path to the config file."""
    return get_config_dir() / _CONFIG_FILENAME


def load_config() -> PipelineConfig:
    """Load the pipeline configuration from the XDG config directory.

    Returns:
        The deserialised :class:`~restpipe.models.PipelineConfig`. If the
        file does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = config_path()
    if not path.is_file():
        return PipelineConfig()
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text)
        return PipelineConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid config at {path}: {exc}") from exc


def save_config(config: PipelineConfig) -> None:
    """Persist the configuration atomically to disk."""
    data = config.model_dump(mode="json")
    _atomic_write(config_path(), json.dumps(data, indent=2) + "\n")


# --- Precedence resolution ---


def set_dotted(data: dict[str, Any], key: str, value: Any) -> None:
    """Assign *value* at a dot-separated *key* inside nested dicts.

    Raises:
        ConfigError: If an intermediate segment is missing or not a dict.
    """
    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if not isinstance(target.get(k), dict):
            raise ConfigError(f"Invalid config key: {key}")
        target = target[k]
    target[keys[-1]] = value


def apply_env_overrides(
    config: PipelineConfig, environ: Optional[dict[str, str]] = None
) -> PipelineConfig:
    """Return a copy of *config* with ``RESTPIPE_*`` overrides applied.

    Values are coerced by Pydantic validation, so ``RESTPIPE_TIMEOUT=5``
    becomes ``5.0`` and ``RESTPIPE_CACHE_ENABLED=false`` becomes ``False``.

    Raises:
        ConfigError: If an override fails validation.
    """
    env = os.environ if environ is None else environ
    overrides = {var: env[var] for var in ENV_OVERRIDES if env.get(var)}
    if not overrides:
        return config

    data = config.model_dump(mode="json")
    for var, value in overrides.items():
        set_dotted(data, ENV_OVERRIDES[var], value)
    try:
        resolved = PipelineConfig.model_validate(data)
    except ValidationError as exc:
        names = ", ".join(sorted(overrides))
        raise ConfigError(f"Invalid environment override ({names}): {exc}") from exc
    resolved.retry.retry_condition = config.retry.retry_condition
    return resolved


def resolve_config() -> PipelineConfig:
    """Resolve the effective configuration.

    Precedence (high to low):
        1. Environment variables (``RESTPIPE_*``, see :data:`ENV_OVERRIDES`)
        2. User config (``~/.config/restpipe/config.json``)
        3. Defaults
    """
    return apply_env_overrides(load_config())


# --- Credential source resolution ---


def _credential_from_env(name: str) -> str:
    try:
        return os.environ[name]
    except KeyError:
        raise ConfigError(f"Credential variable {name} is not set") from None


def _credential_from_file(location: str) -> str:
    path = Path(location).expanduser()
    if not path.is_file():
        raise ConfigError(f"Credential file {path} not found")
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"Credential file {path} is unreadable: {exc}") from exc


_CREDENTIAL_SCHEMES: dict[str, Callable[[str], str]] = {
    "env": _credential_from_env,
    "file": _credential_from_file,
}


def resolve_credential(source: str) -> str:
    """Return the secret described by *source*.

    ``env:NAME`` reads an environment variable; ``file:PATH`` reads a file
    and strips surrounding whitespace.

    Raises:
        ConfigError: For an unknown scheme, an unset variable, or a missing
            or unreadable file.
    """
    scheme, sep, target = source.partition(":")
    reader = _CREDENTIAL_SCHEMES.get(scheme) if sep else None
    if reader is None:
        raise ConfigError(
            f"Unknown credential source {source!r}; expected env:NAME or file:PATH"
        )
    return reader(target)
