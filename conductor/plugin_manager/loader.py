"""Resolves a plugin entry point into a runnable instance."""

import importlib.util
import inspect
import logging
import os
import re
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .exceptions import PluginLoadError, SandboxError
from .models import LifecycleHook, PluginManifest
from .sandbox import PluginSandbox, SandboxOptions

logger = logging.getLogger(__name__)

SANDBOX_LOAD_TIMEOUT_MS = 5000
MODULE_MARKER_LINES = 40
_MODULE_MARKER = re.compile(r"^(import|from)\s+\S+", re.MULTILINE)

PathLike = Union[str, Path]


def _is_interface_base(obj: Any) -> bool:
    # ``from conductor.plugin_interface import Plugin`` is not an export.
    return inspect.isclass(obj) and obj.__module__ == "conductor.plugin_interface"


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


class PluginLoader:
    """Loads plugin code raw (trusted) or through the sandbox (untrusted).

    Either way the manifest is authoritative: the instance's ``metadata``
    and ``capabilities`` are overwritten with the manifest's values.
    """

    def __init__(self) -> None:
        self._module_names: Dict[str, str] = {}

    def load(self, plugin_path: PathLike, manifest: PluginManifest) -> Any:
        main_file = Path(plugin_path) / manifest.main
        plugin_id = manifest.metadata.id
        try:
            if self.is_module_style(main_file):
                namespace = self._load_module(plugin_id, main_file)
                plugin_class = self._resolve_export(namespace, allow_bare=False)
                if plugin_class is None:
                    raise PluginLoadError(
                        'Plugin must export a "default" or "Plugin" class',
                        str(plugin_path),
                    )
            else:
                namespace = self._run_script(plugin_id, main_file)
                plugin_class = self._resolve_export(namespace, allow_bare=True)
                if plugin_class is None:
                    raise PluginLoadError("Plugin must export a class", str(plugin_path))
            plugin = self._instantiate(plugin_class)
            return self._apply_manifest(plugin, manifest)
        except PluginLoadError:
            logger.error(f"Failed to load plugin module at {plugin_path}")
            raise
        except Exception as e:
            logger.error(f"Failed to load plugin module at {plugin_path}: {e}")
            raise PluginLoadError(
                f"Failed to load plugin {plugin_id}: {e}", str(plugin_path)
            ) from e

    def load_in_sandbox(
        self,
        plugin_path: PathLike,
        manifest: PluginManifest,
        sandbox: PluginSandbox,
        options: Optional[SandboxOptions] = None,
    ) -> Any:
        """
        Evaluate the entry point inside a sandbox context scoped to the plugin.

        Args:
            plugin_path: Plugin directory
            manifest: Validated manifest
            sandbox: Sandbox that owns the plugin's context
            options: Sandbox options; derived from the manifest when omitted

        Returns:
            Plugin instance created inside the sandbox
        """
        main_file = Path(plugin_path) / manifest.main
        plugin_id = manifest.metadata.id
        try:
            code = main_file.read_text(encoding="utf-8")
        except OSError as e:
            raise PluginLoadError(
                f"Cannot read entry point {main_file}: {e}", str(plugin_path)
            ) from e

        options = replace(
            options or self.sandbox_options_for(manifest),
            timeout=SANDBOX_LOAD_TIMEOUT_MS,
        )
        sandbox.create_context(plugin_id, options)
        try:
            namespace = sandbox.execute(plugin_id, code, options, filename=str(main_file))
            plugin_class = self._resolve_export(namespace, allow_bare=True)
            if plugin_class is None:
                raise PluginLoadError("Plugin must export a class", str(plugin_path))
            if inspect.isclass(plugin_class):
                plugin = sandbox.call(plugin_id, plugin_class)
            else:
                plugin = plugin_class
            return self._apply_manifest(plugin, manifest)
        except SandboxError as e:
            sandbox.destroy_context(plugin_id)
            raise PluginLoadError(
                f"Failed to load plugin {plugin_id} in sandbox: {e}", str(plugin_path)
            ) from e
        except PluginLoadError:
            sandbox.destroy_context(plugin_id)
            raise

    @staticmethod
    def sandbox_options_for(manifest: PluginManifest) -> SandboxOptions:
        """Derive sandbox options from the manifest's permissions."""
        permissions = manifest.permissions
        env: Dict[str, str] = {}
        groups = []
        if permissions is not None:
            groups = permissions.granted_groups()
            if permissions.system is not None:
                env = {
                    name: os.environ[name]
                    for name in permissions.system.env
                    if name in os.environ
                }
        return SandboxOptions(env=env, permissions=groups)

    def validate_plugin(self, plugin: Any) -> bool:
        """Post-construction structural check."""
        metadata = getattr(plugin, "metadata", None)
        capabilities = getattr(plugin, "capabilities", None)
        if not metadata or capabilities is None:
            return False

        for field in ("id", "name", "version"):
            if not _field(metadata, field):
                return False

        for hook in LifecycleHook:
            value = getattr(plugin, hook.value, None)
            if value is not None and not callable(value):
                return False

        return True

    def unload(self, plugin_id: str) -> None:
        """Drop the imported module so a later load re-executes the source."""
        name = self._module_names.pop(plugin_id, None)
        if name is not None:
            sys.modules.pop(name, None)

    @staticmethod
    def is_module_style(main_file: Path) -> bool:
        """Packages and files opening with import statements load as modules."""
        if main_file.name == "__init__.py":
            return True
        try:
            with open(main_file, "r", encoding="utf-8") as f:
                head = "".join(line for _, line in zip(range(MODULE_MARKER_LINES), f))
        except OSError:
            return False
        return bool(_MODULE_MARKER.search(head))

    def _module_name(self, plugin_id: str) -> str:
        return f"conductor_plugin_{plugin_id.replace('-', '_')}"

    def _load_module(self, plugin_id: str, main_file: Path) -> Dict[str, Any]:
        name = self._module_name(plugin_id)
        search = [str(main_file.parent)] if main_file.name == "__init__.py" else None
        spec = importlib.util.spec_from_file_location(
            name, main_file, submodule_search_locations=search
        )
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"Cannot import entry point {main_file}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(name, None)
            raise
        self._module_names[plugin_id] = name
        return vars(module)

    def _run_script(self, plugin_id: str, main_file: Path) -> Dict[str, Any]:
        source = main_file.read_text(encoding="utf-8")
        namespace: Dict[str, Any] = {
            "__name__": self._module_name(plugin_id),
            "__file__": str(main_file),
        }
        exec(compile(source, str(main_file), "exec"), namespace)
        return namespace

    @staticmethod
    def _resolve_export(namespace: Mapping[str, Any], allow_bare: bool) -> Any:
        for name in ("default", "Plugin"):
            candidate = namespace.get(name)
            if candidate is None or _is_interface_base(candidate):
                continue
            return candidate
        if allow_bare:
            return namespace.get("plugin")
        return None

    @staticmethod
    def _instantiate(plugin_class: Any) -> Any:
        return plugin_class() if inspect.isclass(plugin_class) else plugin_class

    @staticmethod
    def _apply_manifest(plugin: Any, manifest: PluginManifest) -> Any:
        plugin.metadata = manifest.metadata.model_copy(deep=True)
        plugin.capabilities = manifest.capabilities.model_copy(deep=True)
        return plugin
