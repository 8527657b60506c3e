"""Abstract base class for restpipe plugins.

Every plugin must subclass :class:`Plugin` and implement the :attr:`name`
property. A plugin contributes interceptors through :meth:`Plugin.interceptors`
and reacts to its lifecycle through the hook methods (``initialize``,
``configure``, ``activate``, ``deactivate``, ``cleanup``, ``destroy``,
``health_check``). Default implementations are no-ops so plugins only
override what they need. Hooks may be plain methods or coroutine functions.

Plugins are registered as entry points in the ``restpipe.plugins`` group
and discovered at runtime by :class:`~restpipe.plugins.manager.PluginManager`.

Example:
    Minimal plugin implementation::

        class TracePlugin(Plugin):
            @property
            def name(self) -> str:
                return "trace"

            def interceptors(self):
                return [FunctionInterceptor("trace-id", Phase.REQUEST, add_trace_id)]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Union

from restpipe.models import PluginCapability

if TYPE_CHECKING:
    from restpipe.interceptors.base import Interceptor
    from restpipe.plugins.context import PluginContext, PluginHealthStatus

HealthResult = Union["PluginHealthStatus", bool, None]


class Plugin(ABC):
    """Base class for all restpipe plugins.

    Subclasses must implement the :attr:`name` property. All hook methods have
    default no-op implementations so plugins only need to override the
    hooks they care about.

    The plugin lifecycle is:

    1. Instantiation -- discovery calls the no-arg constructor.
    2. :meth:`initialize` then :meth:`configure` -- once, at registration.
       The plugin's interceptors are then registered disabled.
    3. :meth:`activate` -- the interceptors are enabled afterwards.
    4. :meth:`deactivate` -- the interceptors are disabled afterwards.
       Steps 3 and 4 may repeat.
    5. :meth:`cleanup` then :meth:`destroy` -- once, at unregistration.

    Every hook runs under the manager's plugin timeout.

    See Also:
        :class:`~restpipe.plugins.manager.PluginManager` for the state
        machine that drives these hooks.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the unique plugin name used for discovery and logging.

        Returns:
            A short, human-readable identifier (e.g. ``"request-signing"``).
        """
        ...

    @property
    def version(self) -> str:
        """Return the plugin version string.

        Returns:
            A semver-compatible version string. Defaults to ``"0.1.0"``.
        """
        return "0.1.0"

    @property
    def description(self) -> str:
        """Return a brief description of what the plugin does.

        Returns:
            A one-line description string. Defaults to ``""``.
        """
        return ""

    @property
    def dependencies(self) -> list[str]:
        """Names of plugins that must be registered before this one."""
        return []

    @property
    def capabilities(self) -> frozenset[PluginCapability]:
        return frozenset()

    @property
    def config(self) -> dict[str, Any]:
        """Plugin defaults, merged under host-supplied plugin config."""
        return {}

    @property
    def enabled(self) -> bool:
        """Whether the plugin should be active. Registration activates enabled plugins."""
        return getattr(self, "_enabled", True)

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    def interceptors(self) -> list["Interceptor"]:
        """Return the interceptors this plugin contributes.

        Called once at registration. The returned interceptors are
        registered under the group ``plugin:<name>`` and are enabled only
        while the plugin is active.
        """
        return []

    def initialize(self, context: "PluginContext") -> Optional[Awaitable[None]]:
        """Called once at registration with the plugin-scoped context.

        Args:
            context: Services, logger, environment name, and merged config.
        """

    def configure(self, config: dict[str, Any]) -> Optional[Awaitable[None]]:
        """Called once after :meth:`initialize` with the merged plugin config."""

    def activate(self) -> Optional[Awaitable[None]]:
        """Called before the plugin's interceptors are enabled."""

    def deactivate(self) -> Optional[Awaitable[None]]:
        """Called before the plugin's interceptors are disabled."""

    def cleanup(self) -> Optional[Awaitable[None]]:
        """Called at unregistration to release resources.

        Override to close file handles, flush caches, or tear down
        connections established in :meth:`initialize`.
        """

    def destroy(self) -> Optional[Awaitable[None]]:
        """Called last, after :meth:`cleanup`."""

    def health_check(self) -> Union[HealthResult, Awaitable[HealthResult]]:
        """Report plugin health.

        Returns:
            A :class:`~restpipe.plugins.context.PluginHealthStatus`, a bool,
            or ``None`` to use the manager's default rule (healthy iff the
            plugin is active).
        """
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} v{self.version}>"
