import json
from pathlib import Path
from textwrap import dedent
from typing import Any, Dict, Optional

import pytest

from conductor.config import PluginSystemSettings
from conductor.messaging.event_bus import NotificationBus
from conductor.plugin_manager.manager import PluginManager


def manifest_for(plugin_id: str, main: str = "plugin.py", **extra: Any) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {
        "metadata": {
            "id": plugin_id,
            "name": plugin_id.replace("-", " ").title(),
            "version": "1.0.0",
            "author": "Test Author",
            "description": f"{plugin_id} test plugin",
            "license": "MIT",
        },
        "capabilities": {"supportedTaskTypes": ["CODE_GENERATION"], "features": []},
        "main": main,
    }
    manifest.update(extra)
    return manifest


RECORDING_PLUGIN = """
class RecordingPlugin:
    def __init__(self):
        self.calls = []

    def on_install(self, context):
        self.calls.append("on_install")

    async def on_enable(self, context):
        self.calls.append("on_enable")

    async def on_disable(self, context):
        self.calls.append("on_disable")

    def on_uninstall(self, context):
        self.calls.append("on_uninstall")

    def on_update(self, context, previous_version):
        self.calls.append("on_update:" + previous_version)

    async def before_task_create(self, task, context):
        self.calls.append("before_task_create")
        task["seen"] = task.get("seen", []) + [context.api.plugin_id]
        return task


default = RecordingPlugin
"""


@pytest.fixture
def plugins_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def write_plugin(plugins_dir: Path):
    """Write ``<plugins_dir>/<id>/plugin.json`` plus its entry point."""

    def _write(
        plugin_id: str,
        code: str = RECORDING_PLUGIN,
        manifest: Optional[Dict[str, Any]] = None,
        main: str = "plugin.py",
    ) -> Path:
        plugin_dir = plugins_dir / plugin_id
        plugin_dir.mkdir(parents=True, exist_ok=True)
        data = manifest if manifest is not None else manifest_for(plugin_id, main=main)
        (plugin_dir / "plugin.json").write_text(json.dumps(data), encoding="utf-8")
        (plugin_dir / data.get("main", main)).write_text(dedent(code), encoding="utf-8")
        return plugin_dir

    return _write


@pytest.fixture
def make_manager(plugins_dir: Path):
    def _make(**overrides: Any) -> PluginManager:
        values = {
            "plugins_dir": str(plugins_dir),
            "enable_sandbox": False,
            "auto_load": False,
        }
        values.update(overrides)
        return PluginManager(PluginSystemSettings(**values), bus=NotificationBus())

    return _make
