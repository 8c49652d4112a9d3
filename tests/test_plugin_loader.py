import sys
from types import SimpleNamespace

import pytest

from conductor.plugin_manager.exceptions import PluginLoadError
from conductor.plugin_manager.loader import PluginLoader
from conductor.plugin_manager.models import PluginManifest
from conductor.plugin_manager.sandbox import PluginSandbox

from .conftest import manifest_for


def _manifest(plugin_id: str, **extra) -> PluginManifest:
    return PluginManifest.model_validate(manifest_for(plugin_id, **extra))


def test_script_style_default_class_is_instantiated(write_plugin):
    code = """
    class Thing:
        metadata = {"id": "spoofed", "name": "Spoofed", "version": "9.9.9"}

        def on_enable(self, context):
            return "enabled"


    default = Thing
    """
    path = write_plugin("script-plugin", code)

    plugin = PluginLoader().load(path, _manifest("script-plugin"))

    assert plugin.on_enable(None) == "enabled"
    # Manifest wins over whatever the code declared
    assert plugin.metadata.id == "script-plugin"
    assert plugin.metadata.version == "1.0.0"
    assert plugin.capabilities.supported_task_types == ["CODE_GENERATION"]


def test_script_style_bare_plugin_instance(write_plugin):
    code = """
    class _Hello:
        def handle_task(self, task, context):
            return "hello " + task

    plugin = _Hello()
    """
    path = write_plugin("bare-plugin", code)

    plugin = PluginLoader().load(path, _manifest("bare-plugin"))

    assert plugin.handle_task("world", None) == "hello world"


def test_module_style_plugin_subclassing_interface(write_plugin):
    code = """
    from conductor.plugin_interface import Plugin as BasePlugin


    class Plugin(BasePlugin):
        def on_install(self, context):
            return "installed"
    """
    path = write_plugin("module-plugin", code)
    loader = PluginLoader()

    plugin = loader.load(path, _manifest("module-plugin"))

    assert plugin.on_install(None) == "installed"
    assert "conductor_plugin_module_plugin" in sys.modules
    loader.unload("module-plugin")
    assert "conductor_plugin_module_plugin" not in sys.modules


def test_module_style_reexported_interface_is_not_an_export(write_plugin):
    code = """
    from conductor.plugin_interface import Plugin


    class Helper(Plugin):
        pass
    """
    path = write_plugin("no-export", code)

    with pytest.raises(PluginLoadError, match='"default" or "Plugin"'):
        PluginLoader().load(path, _manifest("no-export"))


def test_missing_export_is_a_load_error(write_plugin):
    path = write_plugin("empty-plugin", "value = 1\n")
    with pytest.raises(PluginLoadError, match="must export a class"):
        PluginLoader().load(path, _manifest("empty-plugin"))


def test_syntax_error_is_a_load_error(write_plugin):
    path = write_plugin("broken-plugin", "class Broken(:\n")
    with pytest.raises(PluginLoadError) as exc:
        PluginLoader().load(path, _manifest("broken-plugin"))
    assert exc.value.plugin_path == str(path)


def test_constructor_failure_is_a_load_error(write_plugin):
    code = """
    class Exploding:
        def __init__(self):
            raise RuntimeError("no")

    default = Exploding
    """
    path = write_plugin("exploding-plugin", code)
    with pytest.raises(PluginLoadError, match="no"):
        PluginLoader().load(path, _manifest("exploding-plugin"))


def test_missing_entry_point_is_a_load_error(plugins_dir):
    with pytest.raises(PluginLoadError):
        PluginLoader().load(plugins_dir / "ghost", _manifest("ghost"))


def test_load_in_sandbox_returns_instance_with_manifest_metadata(write_plugin):
    code = """
    import json


    class Sandboxed:
        def before_task_create(self, task, context):
            return json.dumps(task)


    default = Sandboxed
    """
    path = write_plugin("sandboxed", code)
    sandbox = PluginSandbox()

    plugin = PluginLoader().load_in_sandbox(path, _manifest("sandboxed"), sandbox)

    assert plugin.before_task_create({"a": 1}, None) == '{"a": 1}'
    assert plugin.metadata.id == "sandboxed"
    assert "sandboxed" in sandbox.contexts


def test_load_in_sandbox_failure_destroys_context(write_plugin):
    path = write_plugin("forbidden", "import subprocess\n")
    sandbox = PluginSandbox()

    with pytest.raises(PluginLoadError, match="not allowed"):
        PluginLoader().load_in_sandbox(path, _manifest("forbidden"), sandbox)

    assert "forbidden" not in sandbox.contexts


def test_sandbox_options_follow_manifest_permissions(monkeypatch):
    monkeypatch.setenv("TEMPLATES_API", "http://templates")
    monkeypatch.setenv("SECRET_TOKEN", "hidden")
    manifest = _manifest(
        "perms",
        permissions={
            "filesystem": {"write": ["./templates"]},
            "network": {"hosts": ["api.example.com"]},
            "system": {"env": ["TEMPLATES_API", "MISSING_VAR"]},
        },
    )

    options = PluginLoader.sandbox_options_for(manifest)

    assert options.env == {"TEMPLATES_API": "http://templates"}
    assert options.permissions == ["filesystem", "network"]


def test_sandbox_options_without_permissions():
    options = PluginLoader.sandbox_options_for(_manifest("plain"))
    assert options.env == {}
    assert options.permissions == []


def test_validate_plugin_structure():
    loader = PluginLoader()
    manifest = _manifest("shape")
    good = SimpleNamespace(
        metadata=manifest.metadata, capabilities=manifest.capabilities, on_enable=lambda c: None
    )
    assert loader.validate_plugin(good) is True

    assert loader.validate_plugin(SimpleNamespace(capabilities=manifest.capabilities)) is False

    bad_hook = SimpleNamespace(
        metadata=manifest.metadata, capabilities=manifest.capabilities, on_enable="nope"
    )
    assert loader.validate_plugin(bad_hook) is False

    blank_name = SimpleNamespace(
        metadata={"id": "shape", "name": "", "version": "1.0.0"},
        capabilities=manifest.capabilities,
    )
    assert loader.validate_plugin(blank_name) is False


def test_module_style_detection(tmp_path):
    script = tmp_path / "script.py"
    script.write_text("class A:\n    pass\n", encoding="utf-8")
    module = tmp_path / "module.py"
    module.write_text('"""Doc."""\nimport json\n', encoding="utf-8")
    package = tmp_path / "__init__.py"
    package.write_text("", encoding="utf-8")

    assert PluginLoader.is_module_style(script) is False
    assert PluginLoader.is_module_style(module) is True
    assert PluginLoader.is_module_style(package) is True
