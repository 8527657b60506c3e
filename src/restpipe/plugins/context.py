"""Plugin-side data types: services, context, health, statistics, registry entry.

* :class:`PluginServices` -- the service bundle shared by all plugins.
* :class:`PluginContext` -- what one plugin receives in
  :meth:`~restpipe.plugins.base.Plugin.initialize`.
* :class:`PluginHealthStatus`, :class:`PluginStatistics` -- per-plugin
  observability records.
* :class:`PluginRegistryEntry` -- the manager's bookkeeping for one plugin,
  including the lifecycle state machine.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from restpipe.exceptions import PluginStateError
from restpipe.models import PipelineConfig, PluginStatus

if TYPE_CHECKING:
    from restpipe.plugins.base import Plugin


@dataclass
class PluginServices:
    """Services the host makes available to every plugin.

    Attributes:
        variable_store: Shared test variables.
        assertion_engine: The host's assertion engine, if any.
        config: The effective pipeline configuration.
        logger: Host logger.
        http_client: The transport the pipeline sends through.
        register_interceptor: Callback registering an extra interceptor
            outside the plugin's own group.
    """

    variable_store: dict[str, Any] = field(default_factory=dict)
    assertion_engine: Any = None
    config: Optional[PipelineConfig] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("restpipe"))
    http_client: Any = None
    register_interceptor: Optional[Callable[..., str]] = None


@dataclass
class PluginContext:
    """Plugin-scoped view handed to :meth:`~restpipe.plugins.base.Plugin.initialize`."""

    plugin_name: str
    restpipe_version: str
    environment: str
    logger: logging.Logger
    config: dict[str, Any]
    services: PluginServices


@dataclass
class PluginHealthStatus:
    healthy: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    last_checked: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PluginStatistics:
    """Execution counters aggregated over a plugin's interceptors."""

    interceptor_executions: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration: float = 0.0
    last_executed: Optional[float] = None

    @property
    def average_duration(self) -> float:
        if self.interceptor_executions == 0:
            return 0.0
        return self.total_duration / self.interceptor_executions

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["average_duration"] = self.average_duration
        return data


_TRANSITIONS: dict[PluginStatus, frozenset[PluginStatus]] = {
    PluginStatus.LOADING: frozenset({PluginStatus.LOADED, PluginStatus.ERROR}),
    PluginStatus.LOADED: frozenset(
        {PluginStatus.ACTIVE, PluginStatus.ERROR, PluginStatus.UNLOADED}
    ),
    PluginStatus.ACTIVE: frozenset(
        {PluginStatus.INACTIVE, PluginStatus.ERROR, PluginStatus.UNLOADED}
    ),
    PluginStatus.INACTIVE: frozenset(
        {PluginStatus.ACTIVE, PluginStatus.ERROR, PluginStatus.UNLOADED}
    ),
    PluginStatus.ERROR: frozenset({PluginStatus.ERROR, PluginStatus.UNLOADED}),
    PluginStatus.UNLOADED: frozenset(),
}


@dataclass
class PluginRegistryEntry:
    """Manager bookkeeping for one registered plugin.

    ``status`` only changes through :meth:`transition`, which enforces the
    lifecycle state machine.
    """

    plugin: "Plugin"
    context: PluginContext
    status: PluginStatus = PluginStatus.LOADING
    health_status: Optional[PluginHealthStatus] = None
    load_time: float = field(default_factory=time.time)
    statistics: PluginStatistics = field(default_factory=PluginStatistics)
    interceptor_ids: list[str] = field(default_factory=list)
    last_error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.plugin.name

    @property
    def group(self) -> str:
        return plugin_group(self.plugin.name)

    def transition(self, new_status: PluginStatus) -> None:
        """Move to *new_status*.

        Raises:
            PluginStateError: If the lifecycle does not allow the move.
        """
        if new_status not in _TRANSITIONS[self.status]:
            raise PluginStateError(
                f"Plugin '{self.name}' cannot go from {self.status.value} "
                f"to {new_status.value}"
            )
        self.status = new_status


def plugin_group(name: str) -> str:
    """Registry group under which a plugin's interceptors are registered."""
    return f"plugin:{name}"
