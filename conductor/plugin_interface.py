"""
Contracts between the plugin system and the code around it.

Plugins never have to subclass anything here: the manager dispatches the
methods named by ``LifecycleHook`` and ``PluginHook``. Trusted plugins may
subclass ``Plugin`` for typing.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .plugin_manager.models import (
    LifecycleHook,
    PluginCapabilities,
    PluginHook,
    PluginMetadata,
)


class Plugin:
    """Optional base class for trusted plugins.

    The loader overwrites ``metadata`` and ``capabilities`` from the
    manifest. Lifecycle hooks receive the plugin context; ``on_update``
    also receives the previous version. Task hooks receive their
    arguments followed by the context. Hooks may be coroutines.
    """

    metadata: Optional[PluginMetadata] = None
    capabilities: Optional[PluginCapabilities] = None


@runtime_checkable
class TaskAdapter(Protocol):
    """Remote-model backend as seen by the host's task router."""

    async def execute(self, task: Dict[str, Any]) -> Dict[str, Any]: ...

    async def validate(self, result: Dict[str, Any]) -> bool: ...

    def get_capabilities(self) -> Dict[str, Any]: ...


class TaskService(Protocol):
    """Host task service injected into ``PluginAPI``."""

    async def create_task(self, params: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]: ...

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]: ...

    async def get_results(self, task_id: str) -> List[Dict[str, Any]]: ...


__all__ = [
    "LifecycleHook",
    "Plugin",
    "PluginHook",
    "TaskAdapter",
    "TaskService",
]
