import json

import pytest

from conductor.plugin_manager.exceptions import PluginNotFoundError
from conductor.plugin_manager.models import PluginManifest
from conductor.plugin_manager.registry import PluginRegistry

from .conftest import manifest_for


def _manifest(plugin_id: str) -> PluginManifest:
    return PluginManifest.model_validate(manifest_for(plugin_id))


def test_missing_registry_file_means_empty_registry(plugins_dir):
    registry = PluginRegistry(plugins_dir)
    assert registry.get_all_plugins() == []
    assert not registry.registry_path.exists()


def test_register_round_trips_through_disk(plugins_dir):
    registry = PluginRegistry(plugins_dir)
    entry = registry.register_plugin(_manifest("alpha"), plugins_dir / "alpha")

    reloaded = PluginRegistry(plugins_dir).get_plugin("alpha")

    assert reloaded is not None
    assert reloaded.id == entry.id == "alpha"
    assert reloaded.name == entry.name
    assert reloaded.version == entry.version
    assert reloaded.path == entry.path == str(plugins_dir / "alpha")
    assert reloaded.enabled is False
    assert reloaded.installed_at == entry.installed_at
    assert reloaded.updated_at == entry.updated_at


def test_registry_file_uses_camel_case_keys(plugins_dir):
    PluginRegistry(plugins_dir).register_plugin(_manifest("alpha"), plugins_dir / "alpha")

    data = json.loads((plugins_dir / "registry.json").read_text(encoding="utf-8"))

    assert isinstance(data, list)
    assert set(data[0]) == {"id", "name", "version", "path", "enabled", "installedAt", "updatedAt"}


def test_corrupt_registry_file_is_treated_as_empty(plugins_dir):
    (plugins_dir / "registry.json").write_text("{not json", encoding="utf-8")
    assert PluginRegistry(plugins_dir).get_all_plugins() == []


def test_set_enabled_persists_and_bumps_updated_at(plugins_dir):
    registry = PluginRegistry(plugins_dir)
    entry = registry.register_plugin(_manifest("alpha"), plugins_dir / "alpha")

    updated = registry.set_plugin_enabled("alpha", True)

    assert updated.enabled is True
    assert updated.updated_at >= entry.updated_at
    assert [e.id for e in PluginRegistry(plugins_dir).get_enabled_plugins()] == ["alpha"]


def test_update_unknown_plugin_raises(plugins_dir):
    with pytest.raises(PluginNotFoundError, match="registry"):
        PluginRegistry(plugins_dir).update_plugin("ghost", version="2.0.0")


def test_update_ignores_id_and_unknown_fields(plugins_dir):
    registry = PluginRegistry(plugins_dir)
    registry.register_plugin(_manifest("alpha"), plugins_dir / "alpha")

    updated = registry.update_plugin("alpha", id="beta", version="1.1.0", colour="blue")

    assert updated.id == "alpha"
    assert updated.version == "1.1.0"
    assert registry.get_plugin("beta") is None


def test_discover_plugins_skips_ignored_directories(plugins_dir, write_plugin):
    write_plugin("alpha")
    write_plugin("beta")
    (plugins_dir / "no-manifest").mkdir()
    for ignored in ("node_modules", "__pycache__", ".hidden"):
        (plugins_dir / ignored).mkdir()
        (plugins_dir / ignored / "plugin.json").write_text("{}", encoding="utf-8")

    found = sorted(p.name for p in PluginRegistry(plugins_dir).discover_plugins())

    assert found == ["alpha", "beta"]


def test_discover_creates_missing_root(tmp_path):
    root = tmp_path / "not-yet"
    assert PluginRegistry(root).discover_plugins() == []
    assert root.is_dir()


def test_remove_plugin_deletes_directory_and_entry(plugins_dir, write_plugin):
    path = write_plugin("alpha")
    registry = PluginRegistry(plugins_dir)
    registry.register_plugin(_manifest("alpha"), path)

    registry.remove_plugin("alpha")

    assert not path.exists()
    assert registry.get_plugin("alpha") is None
    assert PluginRegistry(plugins_dir).get_all_plugins() == []


def test_remove_plugin_tolerates_missing_directory(plugins_dir):
    registry = PluginRegistry(plugins_dir)
    registry.register_plugin(_manifest("alpha"), plugins_dir / "gone")
    registry.remove_plugin("alpha")
    assert registry.get_plugin("alpha") is None


def test_get_plugin_manifest_reads_from_plugin_directory(plugins_dir, write_plugin):
    path = write_plugin("alpha")
    registry = PluginRegistry(plugins_dir)
    registry.register_plugin(_manifest("alpha"), path)

    manifest = registry.get_plugin_manifest("alpha")

    assert manifest is not None
    assert manifest.metadata.id == "alpha"
    assert registry.get_plugin_manifest("ghost") is None
