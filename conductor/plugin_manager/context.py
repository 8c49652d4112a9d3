"""
Per-plugin context handed to every hook.

Each loaded plugin gets one ``PluginContext``: an id-prefixed logger,
namespaced key/value storage, a flat config store and a host API facade.
The context is reused across enable/disable cycles and dropped on
uninstall.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, MutableMapping, Optional

import aiofiles
import aiofiles.os

from ..messaging.event_bus import NotificationBus
from .models import PluginConfigurationSchema

if TYPE_CHECKING:
    from ..plugin_interface import TaskService

PLUGIN_API_VERSION = "1.0.0"
_STORAGE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

plugins_logger = logging.getLogger("conductor.plugins")


class PluginLogger(logging.LoggerAdapter):
    """Prefixes every message with ``[<plugin_id>] ``."""

    def __init__(self, plugin_id: str, logger: Optional[logging.Logger] = None):
        super().__init__(logger or plugins_logger, {"plugin_id": plugin_id})
        self.plugin_id = plugin_id

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]):
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"[{self.plugin_id}] {msg}", kwargs

    def warn(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.warning(msg, *args, **kwargs)


class PluginStorage:
    """Per-plugin key/value store, one JSON file per key."""

    def __init__(self, storage_dir: Path):
        self.storage_dir = Path(storage_dir)

    def _path(self, key: str) -> Path:
        if not isinstance(key, str) or not _STORAGE_KEY.match(key) or ".." in key:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.storage_dir / f"{key}.json"

    async def get(self, key: str) -> Any:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except (FileNotFoundError, ValueError):
            return None

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        await aiofiles.os.makedirs(self.storage_dir, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(value))

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)

    async def clear(self) -> None:
        await asyncio.to_thread(shutil.rmtree, self.storage_dir, True)

    async def keys(self) -> List[str]:
        try:
            names = await aiofiles.os.listdir(self.storage_dir)
        except FileNotFoundError:
            return []
        return sorted(name[: -len(".json")] for name in names if name.endswith(".json"))


class PluginConfigStore:
    """Flat config document loaded once and rewritten on every ``set``.

    No concurrent-write protection: each plugin owns its file and the host
    calls into it from a single event loop.
    """

    def __init__(
        self,
        config_path: Path,
        schema: Optional[PluginConfigurationSchema] = None,
    ):
        self.config_path = Path(config_path)
        self._values: Dict[str, Any] = dict(schema.defaults()) if schema else {}
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                stored = json.load(f)
            if isinstance(stored, dict):
                self._values.update(stored)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            plugins_logger.warning(f"Ignoring unreadable plugin config {self.config_path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        values = dict(self._values)
        values[key] = value
        # Raises before anything changes if the value is not JSON-serializable
        document = json.dumps(values, indent=2)
        os.makedirs(self.config_path.parent, exist_ok=True)
        tmp = self.config_path.with_name(self.config_path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(document)
        shutil.move(str(tmp), str(self.config_path))
        self._values = values

    def get_all(self) -> Dict[str, Any]:
        return dict(self._values)


class PluginAPI:
    """Host surface exposed to a plugin.

    Task operations delegate to an injected task service; without one they
    raise ``NotImplementedError``. Events are scoped to
    ``plugin:<id>:<event>``; UI registration calls are re-emitted for an
    external shell to render.
    """

    version = PLUGIN_API_VERSION

    def __init__(
        self,
        plugin_id: str,
        bus: NotificationBus,
        task_service: Optional["TaskService"] = None,
    ):
        self.plugin_id = plugin_id
        self._bus = bus
        self._tasks = task_service

    def _task_service(self) -> "TaskService":
        if self._tasks is None:
            raise NotImplementedError("Task service is not available to plugins")
        return self._tasks

    async def create_task(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._task_service().create_task(params)

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return await self._task_service().get_task(task_id)

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._task_service().update_task(task_id, updates)

    async def get_results(self, task_id: str) -> List[Dict[str, Any]]:
        return await self._task_service().get_results(task_id)

    def _scoped(self, event: str) -> str:
        return f"plugin:{self.plugin_id}:{event}"

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return self._bus.subscribe(self._scoped(event), handler)

    async def emit(self, event: str, *args: Any) -> None:
        await self._bus.publish(self._scoped(event), *args)

    async def register_component(self, name: str, component: Any) -> None:
        await self._bus.publish(
            "plugin:component:register",
            {"plugin_id": self.plugin_id, "name": name, "component": component},
        )

    async def register_route(self, path: str, component: Any) -> None:
        await self._bus.publish(
            "plugin:route:register",
            {"plugin_id": self.plugin_id, "path": path, "component": component},
        )

    async def register_menu_item(self, item: Dict[str, Any]) -> None:
        await self._bus.publish(
            "plugin:menu:register", {"plugin_id": self.plugin_id, "item": item}
        )


@dataclass
class PluginContext:
    logger: PluginLogger
    storage: PluginStorage
    config: PluginConfigStore
    api: PluginAPI


def restricted_context(
    context: PluginContext,
    bind_handler: Callable[[Callable[..., Any]], Callable[..., Any]],
) -> SimpleNamespace:
    """
    Method-only view of a context for sandboxed plugin code.

    Exposes the same calls as ``PluginContext`` as bound methods. Paths,
    the bus, the task service and the underlying logger stay on the host
    side. Event handlers pass through ``bind_handler`` so the bus runs them
    under the sandbox time limit.
    """
    log = context.logger
    storage = context.storage
    config = context.config
    api = context.api

    def on(event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        return api.on(event, bind_handler(handler))

    return SimpleNamespace(
        logger=SimpleNamespace(
            plugin_id=log.plugin_id,
            debug=log.debug,
            info=log.info,
            warning=log.warning,
            warn=log.warn,
            error=log.error,
            exception=log.exception,
        ),
        storage=SimpleNamespace(
            get=storage.get,
            set=storage.set,
            delete=storage.delete,
            clear=storage.clear,
            keys=storage.keys,
        ),
        config=SimpleNamespace(get=config.get, set=config.set, get_all=config.get_all),
        api=SimpleNamespace(
            plugin_id=api.plugin_id,
            version=api.version,
            create_task=api.create_task,
            get_task=api.get_task,
            update_task=api.update_task,
            get_results=api.get_results,
            on=on,
            emit=api.emit,
            register_component=api.register_component,
            register_route=api.register_route,
            register_menu_item=api.register_menu_item,
        ),
    )


def create_plugin_context(
    plugin_id: str,
    plugins_dir: Path,
    bus: NotificationBus,
    schema: Optional[PluginConfigurationSchema] = None,
    task_service: Optional["TaskService"] = None,
) -> PluginContext:
    plugin_dir = Path(plugins_dir) / plugin_id
    return PluginContext(
        logger=PluginLogger(plugin_id),
        storage=PluginStorage(plugin_dir / "storage"),
        config=PluginConfigStore(plugin_dir / "config.json", schema),
        api=PluginAPI(plugin_id, bus, task_service),
    )
