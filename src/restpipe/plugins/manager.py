"""Plugin manager -- registration, lifecycle, health, and discovery.

This module contains :class:`PluginManager`, the coordinator that sits on
top of the :class:`~restpipe.interceptors.registry.InterceptorRegistry`.
Plugins are activated and deactivated as units: each plugin's interceptors
are registered disabled under the group ``plugin:<name>`` and toggled
together with the plugin's state.

Lifecycle state machine::

    LOADING -> LOADED -> ACTIVE <-> INACTIVE
    any state -> ERROR
    LOADED / ACTIVE / INACTIVE / ERROR -> UNLOADED

Every lifecycle hook is raced against ``plugin_timeout`` with
:func:`~restpipe.context.run_with_deadline`; health checks use
``health_check_timeout``. Synchronous hooks run in a worker thread.

The entry-point group used for discovery is ``restpipe.plugins``.
Third-party packages register plugins by declaring an entry point under this
group in their ``pyproject.toml``::

    [project.entry-points."restpipe.plugins"]
    my-plugin = "my_package.plugin:MyPlugin"
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.metadata
import logging
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from restpipe import __version__
from restpipe.context import DeadlineExceeded, run_with_deadline
from restpipe.exceptions import (
    ConfigError,
    MissingDependencyError,
    PluginError,
    PluginHookTimeoutError,
    PluginStateError,
)
from restpipe.interceptors.registry import (
    InterceptorEntry,
    InterceptorRegistry,
    InterceptorResult,
)
from restpipe.models import (
    PipelineConfig,
    PluginCapability,
    PluginManagerConfig,
    PluginStatus,
)
from restpipe.plugins.base import Plugin
from restpipe.plugins.context import (
    PluginContext,
    PluginHealthStatus,
    PluginRegistryEntry,
    PluginServices,
    PluginStatistics,
    plugin_group,
)

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "restpipe.plugins"
"""The setuptools entry-point group name used for plugin discovery."""

_GROUP_PREFIX = "plugin:"

PluginFactory = Callable[[], Plugin]


class PluginManager:
    """Registers plugins and drives their lifecycle.

    Args:
        registry: The registry plugin interceptors are added to.
        services: Service bundle exposed to plugins via their context.
        config: Timeouts, health-check interval, and environment name.

    Example:
        Typical usage::

            manager = PluginManager(registry)
            await manager.register_plugin(MyPlugin())
            manager.start_health_checks()
            ...
            await manager.shutdown()
    """

    def __init__(
        self,
        registry: InterceptorRegistry,
        services: Optional[PluginServices] = None,
        config: Optional[PluginManagerConfig] = None,
    ) -> None:
        self._registry = registry
        self._services = services or PluginServices()
        self.config = config or PluginManagerConfig()
        self._plugins: dict[str, PluginRegistryEntry] = {}
        self._sources: dict[str, tuple[PluginFactory, Optional[dict[str, Any]]]] = {}
        self._health_task: Optional[asyncio.Task[None]] = None
        registry.add_listener(self._on_interceptor_result)

    # ------------------------------------------------------------------
    # Hook execution
    # ------------------------------------------------------------------

    async def _run_hook(
        self,
        entry: PluginRegistryEntry,
        hook: str,
        func: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call a plugin hook under its timeout.

        Synchronous hooks run in a worker thread, so a blocking hook is
        timed out like an async one and never holds up the event loop.

        Raises:
            PluginHookTimeoutError: If the hook does not settle in time.
        """
        timeout = timeout if timeout is not None else self.config.plugin_timeout
        try:
            return await run_with_deadline(func, *args, timeout=timeout)
        except DeadlineExceeded:
            raise PluginHookTimeoutError(entry.name, hook, timeout) from None

    def _fail(self, entry: PluginRegistryEntry, hook: str, exc: BaseException) -> PluginError:
        """Move *entry* to ERROR and return the error to raise for *exc*."""
        entry.last_error = exc
        if entry.status != PluginStatus.UNLOADED:
            entry.transition(PluginStatus.ERROR)
        logger.error("Plugin '%s' %s failed: %s", entry.name, hook, exc)
        if isinstance(exc, PluginError):
            return exc
        return PluginError(f"Plugin '{entry.name}' {hook} failed: {exc}")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_plugin(
        self,
        plugin: Plugin,
        config: Optional[dict[str, Any]] = None,
        *,
        factory: Optional[PluginFactory] = None,
    ) -> PluginRegistryEntry:
        """Register, initialise, and (if enabled) activate *plugin*.

        Args:
            plugin: The plugin instance.
            config: Host-supplied settings, merged over ``plugin.config``.
            factory: Builds a fresh instance for :meth:`reload_plugin`;
                defaults to the plugin's class called with no arguments.

        Returns:
            The new registry entry.

        Raises:
            PluginError: If the name or version is missing, the name is
                already registered, or a hook fails. After a hook failure
                the plugin stays registered in ``ERROR`` with no
                interceptors.
            MissingDependencyError: If any declared dependency is not
                registered. The plugin is not added.
        """
        name = plugin.name
        if not name or not plugin.version:
            raise PluginError("Plugin must declare a name and a version")
        if name in self._plugins:
            raise PluginError(f"Plugin '{name}' is already registered")
        missing = [dep for dep in plugin.dependencies if dep not in self._plugins]
        if missing:
            raise MissingDependencyError(name, missing)

        merged = {**plugin.config, **(config or {})}
        context = PluginContext(
            plugin_name=name,
            restpipe_version=__version__,
            environment=self.config.environment,
            logger=logging.getLogger(f"restpipe.plugins.{name}"),
            config=merged,
            services=self._services,
        )
        entry = PluginRegistryEntry(plugin=plugin, context=context)
        self._plugins[name] = entry
        self._sources[name] = (factory or type(plugin), config)

        try:
            await self._run_hook(entry, "initialize", plugin.initialize, context)
            await self._run_hook(entry, "configure", plugin.configure, merged)
            for interceptor in plugin.interceptors():
                entry.interceptor_ids.append(
                    self._registry.register(
                        interceptor, enabled=False, group=entry.group
                    )
                )
            entry.transition(PluginStatus.LOADED)
            logger.info("Loaded plugin '%s' v%s", name, plugin.version)
            if plugin.enabled:
                await self.activate_plugin(name)
        except Exception as exc:
            self._registry.unregister_by_group(entry.group)
            entry.interceptor_ids.clear()
            if entry.status == PluginStatus.ERROR:
                raise
            error = self._fail(entry, "registration", exc)
            if error is exc:
                raise
            raise error from exc
        return entry

    async def unregister_plugin(self, name: str) -> None:
        """Tear down and remove *name*.

        Order: deactivate hook (if active), interceptors disabled and
        unregistered, ``cleanup``, ``destroy``, ``UNLOADED``. Hook failures
        do not stop the teardown; the first one is raised as
        :class:`PluginError` once the plugin has been removed.
        """
        entry = self._require(name)
        failures: list[PluginError] = []

        if entry.status == PluginStatus.ACTIVE:
            try:
                await self.deactivate_plugin(name)
            except PluginError as exc:
                failures.append(exc)

        self._registry.set_group_enabled(entry.group, False)
        self._registry.unregister_by_group(entry.group)
        entry.interceptor_ids.clear()

        for hook in ("cleanup", "destroy"):
            try:
                await self._run_hook(entry, hook, getattr(entry.plugin, hook))
            except Exception as exc:
                logger.warning("Error in %s of plugin '%s': %s", hook, name, exc)
                failures.append(
                    exc
                    if isinstance(exc, PluginError)
                    else PluginError(f"Plugin '{name}' {hook} failed: {exc}")
                )

        entry.transition(PluginStatus.UNLOADED)
        del self._plugins[name]
        self._sources.pop(name, None)
        logger.info("Unloaded plugin '%s'", name)
        if failures:
            raise failures[0]

    async def reload_plugin(self, name: str) -> bool:
        """Unregister *name* and register a fresh instance in its place.

        The instance comes from the factory recorded at registration and
        gets the same host config. Teardown errors of the old instance are
        logged and do not stop the reload.

        Returns:
            ``True`` once the new instance is registered; ``False`` if it
            could not be built or registered. A failure is logged, and a
            plugin whose hooks failed is left registered in ``ERROR``.

        Raises:
            PluginError: If *name* is not registered.
        """
        self._require(name)
        factory, host_config = self._sources[name]
        try:
            await self.unregister_plugin(name)
        except PluginError as exc:
            logger.warning("Error unloading plugin '%s' for reload: %s", name, exc)

        try:
            plugin = factory()
            await self.register_plugin(plugin, host_config, factory=factory)
        except Exception as exc:
            logger.error("Failed to reload plugin '%s': %s", name, exc)
            return False
        logger.info("Reloaded plugin '%s'", name)
        return True

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate_plugin(self, name: str) -> None:
        """Run the ``activate`` hook, then enable the plugin's interceptors.

        A no-op for an already active plugin.

        Raises:
            PluginStateError: If the plugin is not ``LOADED`` or ``INACTIVE``.
            PluginError: If the hook fails; the plugin moves to ``ERROR``
                and its interceptors stay disabled.
        """
        entry = self._require(name)
        if entry.status == PluginStatus.ACTIVE:
            return
        if entry.status not in (PluginStatus.LOADED, PluginStatus.INACTIVE):
            raise PluginStateError(
                f"Cannot activate plugin '{name}' in state {entry.status.value}"
            )
        try:
            await self._run_hook(entry, "activate", entry.plugin.activate)
        except Exception as exc:
            error = self._fail(entry, "activate", exc)
            if error is exc:
                raise
            raise error from exc
        self._registry.set_group_enabled(entry.group, True)
        entry.transition(PluginStatus.ACTIVE)
        logger.info("Activated plugin '%s'", name)

    async def deactivate_plugin(self, name: str) -> None:
        """Run the ``deactivate`` hook, then disable the plugin's interceptors.

        A no-op for a plugin that is ``LOADED`` or already ``INACTIVE``.

        Raises:
            PluginStateError: If the plugin is in ``ERROR``.
            PluginError: If the hook fails; the plugin moves to ``ERROR``.
        """
        entry = self._require(name)
        if entry.status in (PluginStatus.LOADED, PluginStatus.INACTIVE):
            return
        if entry.status != PluginStatus.ACTIVE:
            raise PluginStateError(
                f"Cannot deactivate plugin '{name}' in state {entry.status.value}"
            )
        try:
            await self._run_hook(entry, "deactivate", entry.plugin.deactivate)
        except Exception as exc:
            error = self._fail(entry, "deactivate", exc)
            if error is exc:
                raise
            raise error from exc
        self._registry.set_group_enabled(entry.group, False)
        entry.transition(PluginStatus.INACTIVE)
        logger.info("Deactivated plugin '%s'", name)

    async def enable_plugin(self, name: str) -> None:
        """Mark *name* enabled and activate it."""
        entry = self._require(name)
        entry.plugin.enabled = True
        await self.activate_plugin(name)

    async def disable_plugin(self, name: str) -> None:
        """Mark *name* disabled and deactivate it."""
        entry = self._require(name)
        entry.plugin.enabled = False
        await self.deactivate_plugin(name)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_plugin_health(self, name: str) -> Optional[PluginHealthStatus]:
        """Run the plugin's health check and store the result.

        Failures and timeouts are captured as unhealthy results, never
        raised.

        Returns:
            The new status, or ``None`` if *name* is not registered.
        """
        entry = self._plugins.get(name)
        if entry is None:
            return None
        try:
            result = await self._run_hook(
                entry,
                "health_check",
                entry.plugin.health_check,
                timeout=self.config.health_check_timeout,
            )
        except Exception as exc:
            status = PluginHealthStatus(healthy=False, message=str(exc))
        else:
            if result is None:
                status = PluginHealthStatus(
                    healthy=entry.status == PluginStatus.ACTIVE,
                    message=f"Plugin is {entry.status.value}",
                )
            elif isinstance(result, PluginHealthStatus):
                status = result
                status.last_checked = time.time()
            else:
                status = PluginHealthStatus(
                    healthy=bool(result), message=f"Plugin is {entry.status.value}"
                )
        entry.health_status = status
        if not status.healthy:
            logger.warning("Plugin '%s' unhealthy: %s", name, status.message)
        return status

    async def check_all_plugin_health(self) -> dict[str, PluginHealthStatus]:
        names = list(self._plugins)
        results = await asyncio.gather(*(self.check_plugin_health(n) for n in names))
        return {n: r for n, r in zip(names, results) if r is not None}

    async def _health_loop(self) -> None:
        interval = self.config.health_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_all_plugin_health()
            except Exception:
                logger.exception("Periodic plugin health check failed")

    def start_health_checks(self) -> None:
        """Start the periodic health-check task on the running event loop.

        Does nothing when ``health_check_interval`` is 0 or the task is
        already running.
        """
        if self.config.health_check_interval <= 0:
            return
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def health_checks_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    async def update_config(self, **changes: Any) -> PluginManagerConfig:
        """Replace fields of :attr:`config` at runtime.

        A running health-check task is restarted when
        ``health_check_interval`` changes, and stays stopped if the new
        interval is 0. Other fields apply from the next hook call.

        Raises:
            ConfigError: If a field is unknown or the merged settings fail
                validation.
        """
        unknown = sorted(set(changes) - set(PluginManagerConfig.model_fields))
        if unknown:
            raise ConfigError(f"Unknown plugin manager setting(s): {', '.join(unknown)}")
        try:
            updated = PluginManagerConfig.model_validate(
                {**self.config.model_dump(), **changes}
            )
        except ValidationError as exc:
            raise ConfigError(f"Invalid plugin manager config: {exc}") from exc
        restart = (
            self.health_checks_running
            and updated.health_check_interval != self.config.health_check_interval
        )
        self.config = updated
        if restart:
            await self.stop_health_checks()
            self.start_health_checks()
        return updated

    async def shutdown(self) -> None:
        """Stop health checks and unregister every plugin, newest first.

        Errors from individual plugins are logged and swallowed so that one
        plugin's failure does not prevent others from being unloaded.
        """
        await self.stop_health_checks()
        for name in reversed(list(self._plugins)):
            try:
                await self.unregister_plugin(name)
            except PluginError as exc:
                logger.warning("Error unloading plugin '%s': %s", name, exc)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _on_interceptor_result(
        self, entry: InterceptorEntry, result: InterceptorResult
    ) -> None:
        if not self.config.enable_statistics or result.skipped:
            return
        group = entry.group or ""
        if not group.startswith(_GROUP_PREFIX):
            return
        plugin_entry = self._plugins.get(group[len(_GROUP_PREFIX):])
        if plugin_entry is None:
            return
        stats = plugin_entry.statistics
        stats.interceptor_executions += 1
        stats.total_duration += result.duration
        stats.last_executed = time.time()
        if result.success:
            stats.success_count += 1
        else:
            stats.error_count += 1

    def get_plugin_statistics(self, name: str) -> Optional[PluginStatistics]:
        entry = self._plugins.get(name)
        if entry is None:
            return None
        return PluginStatistics(**vars(entry.statistics))

    def get_all_plugin_statistics(self) -> dict[str, PluginStatistics]:
        return {
            name: PluginStatistics(**vars(entry.statistics))
            for name, entry in self._plugins.items()
        }

    def clear_plugin_statistics(self, name: Optional[str] = None) -> None:
        targets = [self._require(name)] if name is not None else self._plugins.values()
        for entry in targets:
            entry.statistics = PluginStatistics()

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def _require(self, name: str) -> PluginRegistryEntry:
        try:
            return self._plugins[name]
        except KeyError:
            raise PluginError(f"Plugin '{name}' is not registered") from None

    def get_plugin(self, name: str) -> Optional[Plugin]:
        entry = self._plugins.get(name)
        return entry.plugin if entry is not None else None

    def get_entry(self, name: str) -> Optional[PluginRegistryEntry]:
        return self._plugins.get(name)

    def get_status(self, name: str) -> Optional[PluginStatus]:
        entry = self._plugins.get(name)
        return entry.status if entry is not None else None

    def list_plugins(self) -> list[dict[str, Any]]:
        """List registered plugins with their metadata, in registration order."""
        return [
            {
                "name": entry.name,
                "version": entry.plugin.version,
                "description": entry.plugin.description,
                "status": entry.status.value,
                "enabled": entry.plugin.enabled,
                "capabilities": sorted(c.value for c in entry.plugin.capabilities),
                "interceptors": len(entry.interceptor_ids),
            }
            for entry in self._plugins.values()
        ]

    def get_plugins_by_capability(self, capability: PluginCapability) -> list[Plugin]:
        capability = PluginCapability(capability)
        return [
            entry.plugin
            for entry in self._plugins.values()
            if capability in entry.plugin.capabilities
        ]

    def get_summary(self) -> dict[str, Any]:
        """Counts by status and capability, plus a health roll-up."""
        entries = list(self._plugins.values())
        by_status = {status.value: 0 for status in PluginStatus}
        by_capability = {capability.value: 0 for capability in PluginCapability}
        health = {"healthy": 0, "unhealthy": 0, "unknown": 0}
        for entry in entries:
            by_status[entry.status.value] += 1
            for capability in entry.plugin.capabilities:
                by_capability[PluginCapability(capability).value] += 1
            if entry.health_status is None:
                health["unknown"] += 1
            elif entry.health_status.healthy:
                health["healthy"] += 1
            else:
                health["unhealthy"] += 1
        return {
            "total_plugins": len(entries),
            "by_status": by_status,
            "by_capability": by_capability,
            "health": health,
        }

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self, config: Optional[PipelineConfig] = None) -> list[str]:
        """Discover and register plugins via Python entry points.

        Iterates over all entry points in the ``restpipe.plugins`` group,
        filters them against ``config.plugins.enabled`` / ``disabled``, and
        registers each qualifying plugin with its ``config.plugin_config``
        section.

        Returns:
            A list of plugin names that were successfully registered.
            Plugins that fail to load are logged as warnings and skipped.
        """
        config = config or PipelineConfig()
        loaded_names: list[str] = []
        enabled_set = set(config.plugins.enabled)
        disabled_set = set(config.plugins.disabled)

        for ep in iter_entry_points():
            name = ep.name
            if enabled_set and name not in enabled_set:
                logger.debug("Plugin '%s' not in enabled list, skipping", name)
                continue
            if name in disabled_set:
                logger.debug("Plugin '%s' is disabled, skipping", name)
                continue

            try:
                plugin_cls = ep.load()
                plugin: Plugin = plugin_cls()
                await self.register_plugin(
                    plugin, config.plugin_config.get(plugin.name), factory=plugin_cls
                )
                loaded_names.append(plugin.name)
            except Exception as exc:
                logger.warning("Failed to load plugin '%s': %s", name, exc)

        return loaded_names


def iter_entry_points() -> list[importlib.metadata.EntryPoint]:
    """Return the entry points registered in :data:`ENTRY_POINT_GROUP`."""
    return list(importlib.metadata.entry_points(group=ENTRY_POINT_GROUP))
