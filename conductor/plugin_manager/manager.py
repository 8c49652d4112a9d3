"""Plugin manager: the one component the host talks to."""

import asyncio
import functools
import inspect
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..config import PluginSystemSettings
from ..messaging.event_bus import NotificationBus
from .context import PluginContext, create_plugin_context, restricted_context
from .exceptions import (
    HookError,
    LifecycleError,
    ManifestValidationError,
    PluginAlreadyLoadedError,
    PluginLoadError,
    PluginNotFoundError,
)
from .loader import PluginLoader
from .models import (
    LifecycleHook,
    PluginHook,
    PluginInfo,
    PluginManifest,
    PluginMetadata,
    PluginRegistryEntry,
    PluginState,
)
from .registry import MANIFEST_FILENAME, PluginRegistry
from .sandbox import PluginSandbox
from .validator import SEMVER_PATTERN, PluginValidator

logger = logging.getLogger(__name__)

@dataclass
class LoadedPlugin:
    """In-memory record for one loaded plugin."""

    plugin: Any
    manifest: PluginManifest
    context: PluginContext
    path: Path
    sandboxed: bool
    # What hooks receive; a method-only view when sandboxed
    hook_context: Any = None
    hooks: Dict[Union[PluginHook, LifecycleHook], Callable[..., Any]] = field(
        default_factory=dict
    )


def build_dispatch_table(
    plugin: Any,
) -> Dict[Union[PluginHook, LifecycleHook], Callable[..., Any]]:
    """Resolve the enumerated hooks a plugin actually implements."""
    table: Dict[Union[PluginHook, LifecycleHook], Callable[..., Any]] = {}
    for hook in (*LifecycleHook, *PluginHook):
        func = getattr(plugin, hook.value, None)
        if callable(func):
            table[hook] = func
    return table


class PluginManager:
    """Owns loaded plugins, the enabled set and per-plugin contexts.

    State per id: unloaded -> loaded -> enabled <-> loaded -> unloaded.
    Lifecycle notifications are published on the bus as ``plugin:loaded``,
    ``plugin:enabled``, ``plugin:disabled``, ``plugin:uninstalled`` and
    ``plugin:updated``.
    """

    def __init__(
        self,
        settings: Optional[PluginSystemSettings] = None,
        bus: Optional[NotificationBus] = None,
        task_service: Optional[Any] = None,
        registry: Optional[PluginRegistry] = None,
        sandbox: Optional[PluginSandbox] = None,
    ):
        """
        Initialize the plugin manager.

        Args:
            settings: Plugin system settings; read from the environment when omitted
            bus: Notification bus shared with the host
            task_service: Host task service exposed through ``PluginAPI``
            registry: Registry override, mostly for tests
            sandbox: Sandbox override, mostly for tests
        """
        self.settings = settings or PluginSystemSettings.from_provider()
        self.plugins_dir = Path(self.settings.plugins_dir)
        self.bus = bus or NotificationBus()
        self.task_service = task_service

        self.loader = PluginLoader()
        self.sandbox = sandbox or PluginSandbox(self.settings.allowed_permissions)
        self.registry = registry or PluginRegistry(self.plugins_dir)
        self.validator = PluginValidator()

        self.plugins: Dict[str, LoadedPlugin] = {}
        # Insertion-ordered; hook dispatch follows enable order.
        self.enabled: Dict[str, None] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to a manager notification; returns an unsubscribe callable."""
        return self.bus.subscribe(event, handler)

    async def load_all_plugins(self, restore_enabled: Optional[bool] = None) -> List[str]:
        """
        Discover and load every plugin under the plugins root, one at a time.

        A failing plugin is logged and skipped. With ``restore_enabled``,
        plugins whose registry entry says enabled are re-enabled.

        Returns:
            Ids of the plugins loaded by this call
        """
        if restore_enabled is None:
            restore_enabled = self.settings.restore_enabled

        loaded: List[str] = []
        for plugin_dir in self.registry.discover_plugins():
            try:
                metadata = await self.load_plugin(plugin_dir)
            except PluginAlreadyLoadedError:
                continue
            except Exception as e:
                logger.error(f"Failed to load plugin from {plugin_dir}: {e}")
                continue
            loaded.append(metadata.id)

        if restore_enabled:
            for plugin_id in loaded:
                entry = self.registry.get_plugin(plugin_id)
                if entry is None or not entry.enabled:
                    continue
                try:
                    await self.enable_plugin(plugin_id)
                except Exception as e:
                    logger.error(f"Failed to re-enable plugin {plugin_id}: {e}")

        logger.info(f"Loaded {len(loaded)} plugin(s) from {self.plugins_dir}")
        return loaded

    async def load_plugin(self, plugin_path: Union[str, Path]) -> PluginMetadata:
        """
        Load one plugin directory.

        Args:
            plugin_path: Directory containing ``plugin.json``

        Returns:
            The manifest metadata of the loaded plugin

        Raises:
            ManifestValidationError: manifest unreadable or invalid
            PluginAlreadyLoadedError: id already loaded
            PluginLoadError: entry point could not be loaded
            LifecycleError: ``on_install`` raised
        """
        plugin_path = Path(plugin_path)
        try:
            # Load and validate manifest
            raw = self._read_manifest(plugin_path)
            validation = self.validator.validate_manifest(raw)
            for warning in validation.warnings:
                logger.warning(f"Plugin manifest warning ({plugin_path}): {warning}")
            if not validation.valid:
                raise ManifestValidationError(
                    f"Invalid manifest: {', '.join(validation.errors)}",
                    validation.errors,
                    validation.warnings,
                )
            try:
                manifest = PluginManifest.model_validate(raw)
            except ValidationError as e:
                raise ManifestValidationError(
                    f"Invalid manifest: {e}", [str(err["msg"]) for err in e.errors()]
                ) from e
            plugin_id = manifest.metadata.id

            # No implicit reload
            if plugin_id in self.plugins:
                raise PluginAlreadyLoadedError(plugin_id)

            # Load plugin code
            if self.settings.enable_sandbox:
                options = replace(
                    self.loader.sandbox_options_for(manifest),
                    memory=self.settings.sandbox_memory_mb,
                )
                plugin = self.loader.load_in_sandbox(
                    plugin_path, manifest, self.sandbox, options
                )
            else:
                plugin = self.loader.load(plugin_path, manifest)

            if not self.loader.validate_plugin(plugin):
                self._discard_code(plugin_id)
                raise PluginLoadError(
                    f"Plugin {plugin_id} failed structural validation", str(plugin_path)
                )

            context = create_plugin_context(
                plugin_id,
                self.plugins_dir,
                self.bus,
                schema=manifest.configuration,
                task_service=self.task_service,
            )
            if self.settings.enable_sandbox:
                hook_context = restricted_context(
                    context,
                    functools.partial(
                        self.sandbox.bind,
                        plugin_id,
                        timeout=self.settings.sandbox_timeout_ms,
                    ),
                )
            else:
                hook_context = context
            record = LoadedPlugin(
                plugin=plugin,
                manifest=manifest,
                context=context,
                path=plugin_path,
                sandboxed=self.settings.enable_sandbox,
                hook_context=hook_context,
                hooks=build_dispatch_table(plugin),
            )
            self.plugins[plugin_id] = record

            # First-ever load of this id
            entry = self.registry.get_plugin(plugin_id)
            if entry is None:
                try:
                    await self._fire_lifecycle(record, LifecycleHook.ON_INSTALL)
                except LifecycleError:
                    self.plugins.pop(plugin_id, None)
                    self._discard_code(plugin_id)
                    raise
                self.registry.register_plugin(manifest, plugin_path)
            elif self._registry_stale(entry, manifest, plugin_path):
                self.registry.update_plugin(
                    plugin_id,
                    name=manifest.metadata.name,
                    version=manifest.metadata.version,
                    path=plugin_path,
                )

            await self.bus.publish("plugin:loaded", manifest.metadata)
            logger.info(f"Plugin loaded: {plugin_id} ({manifest.metadata.name})")
            return manifest.metadata
        except Exception as e:
            logger.error(f"Failed to load plugin from {plugin_path}: {e}")
            raise

    async def enable_plugin(self, plugin_id: str) -> None:
        record = self._require(plugin_id)
        if plugin_id in self.enabled:
            return

        await self._fire_lifecycle(record, LifecycleHook.ON_ENABLE)
        self.enabled[plugin_id] = None
        self._persist_enabled(plugin_id, True)

        await self.bus.publish("plugin:enabled", plugin_id)
        logger.info(f"Plugin enabled: {plugin_id}")

    async def disable_plugin(self, plugin_id: str, persist: bool = True) -> None:
        """Fire ``on_disable``; with ``persist=False`` the registry keeps its enabled flag."""
        record = self._require(plugin_id)
        if plugin_id not in self.enabled:
            return

        await self._fire_lifecycle(record, LifecycleHook.ON_DISABLE)
        self.enabled.pop(plugin_id, None)
        if persist:
            self._persist_enabled(plugin_id, False)

        await self.bus.publish("plugin:disabled", plugin_id)
        logger.info(f"Plugin disabled: {plugin_id}")

    async def uninstall_plugin(self, plugin_id: str) -> None:
        """Disable if needed, fire ``on_uninstall``, then remove the plugin from disk."""
        record = self._require(plugin_id)

        if plugin_id in self.enabled:
            await self.disable_plugin(plugin_id)

        await self._fire_lifecycle(record, LifecycleHook.ON_UNINSTALL)

        # Clean up
        self.plugins.pop(plugin_id, None)
        self._discard_code(plugin_id)
        self.registry.remove_plugin(plugin_id)

        await self.bus.publish("plugin:uninstalled", plugin_id)
        logger.info(f"Plugin uninstalled: {plugin_id}")

    async def update_plugin(self, plugin_id: str, new_version: str) -> None:
        """
        Record a new version for a loaded plugin.

        Metadata only: the plugin's code is not replaced. An enabled plugin
        is disabled around ``on_update`` and re-enabled afterwards.
        """
        record = self._require(plugin_id)
        if not SEMVER_PATTERN.match(new_version or ""):
            raise LifecycleError(f"Invalid version: {new_version}", plugin_id)

        was_enabled = plugin_id in self.enabled
        previous_version = record.manifest.metadata.version

        if was_enabled:
            await self.disable_plugin(plugin_id)

        await self._fire_lifecycle(record, LifecycleHook.ON_UPDATE, previous_version)

        record.manifest.metadata.version = new_version
        record.plugin.metadata.version = new_version
        if self.registry.get_plugin(plugin_id) is not None:
            self.registry.update_plugin(plugin_id, version=new_version)

        if was_enabled:
            await self.enable_plugin(plugin_id)

        await self.bus.publish("plugin:updated", plugin_id, new_version)
        logger.info(
            f"Plugin updated: {plugin_id} {previous_version} -> {new_version}"
        )

    def get_plugin(self, plugin_id: str) -> Optional[Any]:
        record = self.plugins.get(plugin_id)
        return record.plugin if record else None

    def get_context(self, plugin_id: str) -> Optional[PluginContext]:
        record = self.plugins.get(plugin_id)
        return record.context if record else None

    def get_enabled_plugins(self) -> List[Any]:
        return [self.plugins[pid].plugin for pid in self.enabled if pid in self.plugins]

    def get_all_plugins(self) -> List[Any]:
        return [record.plugin for record in self.plugins.values()]

    def is_plugin_enabled(self, plugin_id: str) -> bool:
        return plugin_id in self.enabled

    def get_registry_entries(self) -> List[PluginRegistryEntry]:
        return self.registry.get_all_plugins()

    def get_plugin_state(self, plugin_id: str) -> PluginState:
        if plugin_id in self.enabled:
            return PluginState.ENABLED
        if plugin_id in self.plugins:
            return PluginState.LOADED
        return PluginState.UNLOADED

    def get_plugin_info(self, plugin_id: str) -> Optional[PluginInfo]:
        """Merge in-memory and registry views of one plugin."""
        record = self.plugins.get(plugin_id)
        entry = self.registry.get_plugin(plugin_id)
        if record is None and entry is None:
            return None

        if record is not None:
            metadata = record.manifest.metadata
            name, version = metadata.name, metadata.version
            path = str(record.path)
            capabilities = record.manifest.capabilities
        else:
            name, version, path, capabilities = entry.name, entry.version, entry.path, None

        return PluginInfo(
            id=plugin_id,
            name=name,
            version=version,
            state=self.get_plugin_state(plugin_id),
            path=path,
            installed_at=entry.installed_at if entry else None,
            updated_at=entry.updated_at if entry else None,
            capabilities=capabilities,
        )

    def list_plugin_info(self) -> List[PluginInfo]:
        ids = list(self.plugins)
        ids.extend(e.id for e in self.registry.get_all_plugins() if e.id not in self.plugins)
        return [info for info in map(self.get_plugin_info, ids) if info is not None]

    def get_resource_usage(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        return self.sandbox.get_resource_usage(plugin_id)

    async def call_hook(self, hook: Union[PluginHook, str], *args: Any) -> List[Any]:
        """
        Dispatch a task hook to every enabled plugin that implements it.

        Plugins run one after another in enable order; each receives
        ``*args`` followed by its own context. A raising plugin is logged
        and skipped.

        Returns:
            Non-``None`` results, in dispatch order
        """
        hook = PluginHook(hook)
        results: List[Any] = []

        for plugin_id in list(self.enabled):
            record = self.plugins.get(plugin_id)
            if record is None:
                continue
            func = record.hooks.get(hook)
            if func is None:
                continue
            try:
                result = await self._invoke(record, func, *args, record.hook_context)
            except Exception as e:
                logger.error(str(HookError(plugin_id, hook.value, e)))
                continue
            if result is not None:
                results.append(result)

        return results

    async def shutdown(self) -> None:
        """Disable enabled plugins and tear down sandbox contexts."""
        for plugin_id in reversed(list(self.enabled)):
            try:
                await self.disable_plugin(plugin_id, persist=False)
            except Exception as e:
                logger.error(f"Failed to disable plugin {plugin_id} on shutdown: {e}")
        for plugin_id in list(self.plugins):
            self._discard_code(plugin_id)
        self.plugins.clear()
        logger.info("Plugin manager shut down")

    def _require(self, plugin_id: str) -> LoadedPlugin:
        record = self.plugins.get(plugin_id)
        if record is None:
            raise PluginNotFoundError(plugin_id)
        return record

    @staticmethod
    def _read_manifest(plugin_path: Path) -> Dict[str, Any]:
        manifest_path = plugin_path / MANIFEST_FILENAME
        try:
            with open(manifest_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ManifestValidationError(
                f"Cannot read manifest {manifest_path}: {e}", [str(e)]
            ) from e
        if not isinstance(data, dict):
            raise ManifestValidationError(
                f"Manifest {manifest_path} must be a JSON object",
                ["Manifest must be an object"],
            )
        return data

    @staticmethod
    def _registry_stale(
        entry: PluginRegistryEntry, manifest: PluginManifest, plugin_path: Path
    ) -> bool:
        return (
            entry.name != manifest.metadata.name
            or entry.version != manifest.metadata.version
            or entry.path != str(plugin_path)
        )

    def _persist_enabled(self, plugin_id: str, enabled: bool) -> None:
        if self.registry.get_plugin(plugin_id) is not None:
            self.registry.set_plugin_enabled(plugin_id, enabled)

    def _discard_code(self, plugin_id: str) -> None:
        self.sandbox.destroy_context(plugin_id)
        self.loader.unload(plugin_id)
        self.enabled.pop(plugin_id, None)

    async def _fire_lifecycle(
        self, record: LoadedPlugin, hook: LifecycleHook, *extra: Any
    ) -> None:
        func = record.hooks.get(hook)
        if func is None:
            return
        plugin_id = record.manifest.metadata.id
        try:
            await self._invoke(record, func, record.hook_context, *extra)
        except Exception as e:
            logger.error(f"Lifecycle hook {hook.value} failed for plugin {plugin_id}: {e}")
            raise LifecycleError(
                f"Lifecycle hook {hook.value} failed for plugin {plugin_id}: {e}",
                plugin_id,
            ) from e

    async def _invoke(self, record: LoadedPlugin, func: Callable[..., Any], *args: Any) -> Any:
        timeout_ms = self.settings.hook_timeout_ms
        if record.sandboxed:
            sandbox_timeout = self.settings.sandbox_timeout_ms
            plugin_id = record.manifest.metadata.id
            result = self.sandbox.call(plugin_id, func, *args, timeout=sandbox_timeout)
            if inspect.iscoroutine(result):
                result = self.sandbox.run_coroutine(plugin_id, result, sandbox_timeout)
            timeout_ms = timeout_ms or sandbox_timeout
        else:
            result = func(*args)

        if not inspect.isawaitable(result):
            return result
        if timeout_ms:
            return await asyncio.wait_for(result, timeout_ms / 1000.0)
        return await result
