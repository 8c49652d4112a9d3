import json
import logging

import pytest

from conductor.messaging.event_bus import NotificationBus
from conductor.plugin_manager.context import (
    PLUGIN_API_VERSION,
    PluginAPI,
    PluginConfigStore,
    PluginLogger,
    PluginStorage,
    create_plugin_context,
    restricted_context,
)
from conductor.plugin_interface import TaskAdapter
from conductor.plugin_manager.models import PluginConfigurationSchema


def test_plugin_logger_prefixes_and_tags_records(caplog):
    caplog.set_level(logging.DEBUG, logger="conductor.plugins")
    log = PluginLogger("alpha")

    log.info("hello")
    log.warn("careful")

    assert [r.getMessage() for r in caplog.records] == ["[alpha] hello", "[alpha] careful"]
    assert all(r.plugin_id == "alpha" for r in caplog.records)
    assert caplog.records[1].levelno == logging.WARNING


@pytest.mark.asyncio
async def test_storage_round_trip(tmp_path):
    storage = PluginStorage(tmp_path / "alpha" / "storage")

    assert await storage.get("missing") is None
    await storage.set("settings", {"theme": "dark", "count": 2})
    await storage.set("history", [1, 2, 3])

    assert await storage.get("settings") == {"theme": "dark", "count": 2}
    assert await storage.keys() == ["history", "settings"]
    assert (tmp_path / "alpha" / "storage" / "settings.json").is_file()

    await storage.delete("history")
    await storage.delete("history")
    assert await storage.keys() == ["settings"]

    await storage.clear()
    assert await storage.keys() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["../escape", "a/b", "", ".hidden"])
async def test_storage_rejects_unsafe_keys(tmp_path, key):
    storage = PluginStorage(tmp_path / "storage")
    with pytest.raises(ValueError):
        await storage.set(key, 1)


def test_config_store_applies_schema_defaults_and_persists(tmp_path):
    schema = PluginConfigurationSchema.model_validate(
        {
            "properties": {
                "threshold": {"type": "number", "default": 5},
                "label": {"type": "string"},
            }
        }
    )
    path = tmp_path / "alpha" / "config.json"

    config = PluginConfigStore(path, schema)
    assert config.get("threshold") == 5
    assert config.get("label") is None
    assert config.get("label", "fallback") == "fallback"

    config.set("label", "custom")

    assert json.loads(path.read_text(encoding="utf-8")) == {"threshold": 5, "label": "custom"}
    reloaded = PluginConfigStore(path, schema)
    assert reloaded.get_all() == {"threshold": 5, "label": "custom"}


def test_config_store_stored_values_override_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"threshold": 9}), encoding="utf-8")
    schema = PluginConfigurationSchema.model_validate(
        {"properties": {"threshold": {"type": "number", "default": 5}}}
    )
    assert PluginConfigStore(path, schema).get("threshold") == 9


def test_config_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{oops", encoding="utf-8")
    assert PluginConfigStore(path).get_all() == {}


@pytest.mark.asyncio
async def test_api_task_operations_need_a_task_service():
    api = PluginAPI("alpha", NotificationBus())
    assert api.version == PLUGIN_API_VERSION == "1.0.0"
    with pytest.raises(NotImplementedError):
        await api.create_task({"prompt": "x"})
    with pytest.raises(NotImplementedError):
        await api.get_results("task-1")


@pytest.mark.asyncio
async def test_api_delegates_to_injected_task_service():
    class FakeTasks:
        async def create_task(self, params):
            return {"id": "t-1", **params}

        async def get_task(self, task_id):
            return {"id": task_id}

        async def update_task(self, task_id, updates):
            return {"id": task_id, **updates}

        async def get_results(self, task_id):
            return [{"task_id": task_id}]

    api = PluginAPI("alpha", NotificationBus(), FakeTasks())

    assert await api.create_task({"prompt": "x"}) == {"id": "t-1", "prompt": "x"}
    assert await api.get_task("t-1") == {"id": "t-1"}
    assert await api.update_task("t-1", {"status": "done"}) == {"id": "t-1", "status": "done"}
    assert await api.get_results("t-1") == [{"task_id": "t-1"}]


@pytest.mark.asyncio
async def test_api_events_are_scoped_to_plugin():
    bus = NotificationBus()
    alpha = PluginAPI("alpha", bus)
    beta = PluginAPI("beta", bus)
    received = []

    unsubscribe = alpha.on("ping", lambda value: received.append(value))
    await alpha.emit("ping", 1)
    await beta.emit("ping", 2)
    assert received == [1]
    assert bus.listener_count("plugin:alpha:ping") == 1

    unsubscribe()
    await alpha.emit("ping", 3)
    assert received == [1]


@pytest.mark.asyncio
async def test_api_ui_registration_reemits_notifications():
    bus = NotificationBus()
    seen = []
    for event in ("plugin:component:register", "plugin:route:register", "plugin:menu:register"):
        bus.subscribe(event, lambda payload, event=event: seen.append((event, payload)))
    api = PluginAPI("alpha", bus)

    await api.register_component("Dashboard", {"type": "panel"})
    await api.register_route("/alpha", "Dashboard")
    await api.register_menu_item({"id": "alpha", "label": "Alpha"})

    assert seen == [
        (
            "plugin:component:register",
            {"plugin_id": "alpha", "name": "Dashboard", "component": {"type": "panel"}},
        ),
        (
            "plugin:route:register",
            {"plugin_id": "alpha", "path": "/alpha", "component": "Dashboard"},
        ),
        ("plugin:menu:register", {"plugin_id": "alpha", "item": {"id": "alpha", "label": "Alpha"}}),
    ]


def test_create_plugin_context_lays_out_per_plugin_paths(tmp_path):
    context = create_plugin_context("alpha", tmp_path, NotificationBus())
    assert context.storage.storage_dir == tmp_path / "alpha" / "storage"
    assert context.config.config_path == tmp_path / "alpha" / "config.json"
    assert context.api.plugin_id == "alpha"
    assert context.logger.plugin_id == "alpha"


def test_task_adapter_protocol_is_structural():
    class EchoAdapter:
        async def execute(self, task):
            return {"output": task["prompt"]}

        async def validate(self, result):
            return "output" in result

        def get_capabilities(self):
            return {"task_types": ["CODE_GENERATION"]}

    assert isinstance(EchoAdapter(), TaskAdapter)
    assert not isinstance(object(), TaskAdapter)


def test_config_store_set_rejects_unserializable_values_without_side_effects(tmp_path):
    path = tmp_path / "config.json"
    config = PluginConfigStore(path)
    config.set("label", "kept")

    with pytest.raises(TypeError):
        config.set("handle", object())

    assert config.get_all() == {"label": "kept"}
    assert json.loads(path.read_text(encoding="utf-8")) == {"label": "kept"}
    assert not (tmp_path / "config.json.tmp").exists()


@pytest.mark.asyncio
async def test_restricted_context_exposes_methods_only(tmp_path):
    bus = NotificationBus()
    context = create_plugin_context("alpha", tmp_path, bus)
    bound = []

    def bind_handler(handler):
        bound.append(handler)
        return handler

    view = restricted_context(context, bind_handler)

    for section, hidden in (
        (view.storage, "storage_dir"),
        (view.config, "config_path"),
        (view.api, "_bus"),
        (view.api, "_tasks"),
        (view.logger, "logger"),
    ):
        assert not hasattr(section, hidden)
    assert view.api.plugin_id == "alpha"
    assert view.api.version == PLUGIN_API_VERSION

    await view.storage.set("k", 1)
    assert await context.storage.get("k") == 1
    view.config.set("threshold", 3)
    assert context.config.get("threshold") == 3

    received = []
    handler = received.append
    unsubscribe = view.api.on("ping", handler)
    await view.api.emit("ping", "x")
    assert bound == [handler]
    assert received == ["x"]
    unsubscribe()
    assert bus.listener_count("plugin:alpha:ping") == 0
