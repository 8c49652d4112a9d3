"""Durable, disk-backed catalogue of installed plugins."""

from typing import Any, Dict, List, Optional, Union
import json
import logging
import os
import shutil
from pathlib import Path

from .exceptions import PluginNotFoundError
from .models import PluginManifest, PluginRegistryEntry, utcnow

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "plugin.json"
REGISTRY_FILENAME = "registry.json"
IGNORED_DIRECTORIES = {"node_modules", "__pycache__"}


class PluginRegistry:
    """Catalogue of installed plugins, persisted as one JSON document.

    Entries survive independently of whether a plugin is loaded in memory.
    Every mutation rewrites ``<plugins_dir>/registry.json`` in full.
    """

    def __init__(self, plugins_dir: Union[str, Path]):
        self.plugins_dir = Path(plugins_dir)
        self.registry_path = self.plugins_dir / REGISTRY_FILENAME
        self.plugins: Dict[str, PluginRegistryEntry] = {}
        self.load_registry()

    def load_registry(self) -> None:
        """Read the catalogue from disk; a missing file means an empty registry."""
        self.plugins.clear()
        try:
            with open(self.registry_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read plugin registry {self.registry_path}: {e}")
            return

        for raw in data if isinstance(data, list) else []:
            try:
                entry = PluginRegistryEntry.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping invalid registry entry {raw!r}: {e}")
                continue
            self.plugins[entry.id] = entry

    def save_registry(self) -> bool:
        """Rewrite the catalogue. Failures are logged, not retried."""
        data = [
            entry.model_dump(mode="json", by_alias=True)
            for entry in self.plugins.values()
        ]
        tmp = self.registry_path.with_name(self.registry_path.name + ".tmp")
        try:
            os.makedirs(self.plugins_dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            shutil.move(str(tmp), str(self.registry_path))
            return True
        except OSError as e:
            logger.error(f"Failed to write plugin registry {self.registry_path}: {e}")
            return False

    def discover_plugins(self) -> List[Path]:
        """List plugin directories under the plugins root that carry a manifest."""
        try:
            os.makedirs(self.plugins_dir, exist_ok=True)
            candidates = list(os.scandir(self.plugins_dir))
        except OSError as e:
            logger.error(f"Failed to discover plugins in {self.plugins_dir}: {e}")
            return []

        plugin_dirs: List[Path] = []
        for entry in candidates:
            if not entry.is_dir() or entry.name in IGNORED_DIRECTORIES:
                continue
            if entry.name.startswith("."):
                continue
            plugin_path = Path(entry.path)
            if (plugin_path / MANIFEST_FILENAME).is_file():
                plugin_dirs.append(plugin_path)
        return plugin_dirs

    def register_plugin(
        self, manifest: PluginManifest, plugin_path: Union[str, Path]
    ) -> PluginRegistryEntry:
        now = utcnow()
        entry = PluginRegistryEntry(
            id=manifest.metadata.id,
            name=manifest.metadata.name,
            version=manifest.metadata.version,
            path=str(plugin_path),
            enabled=False,
            installed_at=now,
            updated_at=now,
        )
        self.plugins[entry.id] = entry
        self.save_registry()
        logger.info(f"Plugin registered: {entry.id}")
        return entry

    def unregister_plugin(self, plugin_id: str) -> None:
        self.plugins.pop(plugin_id, None)
        self.save_registry()

    def update_plugin(self, plugin_id: str, **updates: Any) -> PluginRegistryEntry:
        entry = self.plugins.get(plugin_id)
        if entry is None:
            raise PluginNotFoundError(plugin_id, "registry")

        changes = {k: v for k, v in updates.items() if k in PluginRegistryEntry.model_fields}
        changes.pop("id", None)
        if "path" in changes:
            changes["path"] = str(changes["path"])
        changes["updated_at"] = utcnow()
        updated = entry.model_copy(update=changes)
        self.plugins[plugin_id] = updated
        self.save_registry()
        return updated

    def set_plugin_enabled(self, plugin_id: str, enabled: bool) -> PluginRegistryEntry:
        return self.update_plugin(plugin_id, enabled=enabled)

    def get_plugin(self, plugin_id: str) -> Optional[PluginRegistryEntry]:
        return self.plugins.get(plugin_id)

    def get_all_plugins(self) -> List[PluginRegistryEntry]:
        return list(self.plugins.values())

    def get_enabled_plugins(self) -> List[PluginRegistryEntry]:
        return [entry for entry in self.plugins.values() if entry.enabled]

    def remove_plugin(self, plugin_id: str) -> None:
        """Delete the plugin's directory (best effort) and drop its entry."""
        entry = self.plugins.get(plugin_id)
        if entry is None:
            return

        try:
            shutil.rmtree(entry.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove plugin directory {entry.path}: {e}")

        self.unregister_plugin(plugin_id)
        logger.info(f"Plugin removed: {plugin_id}")

    def get_plugin_manifest(self, plugin_id: str) -> Optional[PluginManifest]:
        entry = self.plugins.get(plugin_id)
        if entry is None:
            return None
        try:
            with open(Path(entry.path) / MANIFEST_FILENAME, "r", encoding="utf-8") as f:
                return PluginManifest.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read manifest for plugin {plugin_id}: {e}")
            return None
