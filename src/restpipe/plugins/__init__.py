"""Plugin system for restpipe -- discovery, registration, and lifecycle.

Third-party packages can register plugins by declaring an entry point in the
``restpipe.plugins`` group. At runtime, :class:`PluginManager` discovers
and registers those entry points and drives each plugin through its
lifecycle, enabling and disabling the plugin's interceptors as a unit.

Key classes:

* :class:`Plugin` -- Abstract base class that all plugins must extend.
* :class:`PluginManager` -- Registers plugins and manages their lifecycle,
  health checks, and statistics.
* :class:`PluginContext` -- Plugin-scoped view of the host services.

Example:
    Typical usage from a host application::

        from restpipe.plugins import PluginManager

        manager = PluginManager(registry)
        await manager.discover(pipeline_config)
        manager.start_health_checks()
"""

from restpipe.plugins.base import Plugin
from restpipe.plugins.context import (
    PluginContext,
    PluginHealthStatus,
    PluginRegistryEntry,
    PluginServices,
    PluginStatistics,
)
from restpipe.plugins.manager import ENTRY_POINT_GROUP, PluginManager

__all__ = [
    "ENTRY_POINT_GROUP",
    "Plugin",
    "PluginContext",
    "PluginHealthStatus",
    "PluginManager",
    "PluginRegistryEntry",
    "PluginServices",
    "PluginStatistics",
]
