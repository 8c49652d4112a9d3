from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from conductor.api.models import PluginLoadRequest, PluginUpdateRequest
from conductor.plugin_manager.exceptions import (
    LifecycleError,
    ManifestValidationError,
    PluginAlreadyLoadedError,
    PluginError,
    PluginLoadError,
    PluginNotFoundError,
)
from conductor.plugin_manager.manager import PluginManager


plugins_router = APIRouter(prefix="/admin/plugins", tags=["plugins"])


# Set by conductor.main
_MANAGER: Optional[PluginManager] = None


def configure_plugins_api(*, manager: Optional[PluginManager]) -> None:
    global _MANAGER
    _MANAGER = manager


def _manager() -> PluginManager:
    if _MANAGER is None:
        raise HTTPException(status_code=500, detail="Plugin manager not available")
    return _MANAGER


def _http_error(e: PluginError) -> HTTPException:
    if isinstance(e, ManifestValidationError):
        return HTTPException(
            status_code=400,
            detail={"message": str(e), "errors": e.errors, "warnings": e.warnings},
        )
    if isinstance(e, PluginNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PluginAlreadyLoadedError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PluginLoadError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, LifecycleError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _info(manager: PluginManager, plugin_id: str) -> Dict[str, Any]:
    info = manager.get_plugin_info(plugin_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Plugin not found")
    return info.model_dump(mode="json", by_alias=True)


@plugins_router.get("")
async def list_plugins():
    manager = _manager()
    result = [info.model_dump(mode="json", by_alias=True) for info in manager.list_plugin_info()]
    return {"plugins": result, "total": len(result)}


@plugins_router.get("/registry")
async def list_registry():
    manager = _manager()
    entries = [
        entry.model_dump(mode="json", by_alias=True)
        for entry in manager.get_registry_entries()
    ]
    return {"plugins": entries, "total": len(entries)}


@plugins_router.get("/{plugin_id}")
async def get_plugin(plugin_id: str):
    manager = _manager()
    data = _info(manager, plugin_id)
    usage = manager.get_resource_usage(plugin_id)
    if usage is not None:
        data["resourceUsage"] = usage
    return data


@plugins_router.post("/load", status_code=201)
async def load_plugin(payload: PluginLoadRequest):
    manager = _manager()
    path = Path(payload.path)
    if not path.is_absolute():
        path = manager.plugins_dir / path
    try:
        metadata = await manager.load_plugin(path)
        if payload.enable:
            await manager.enable_plugin(metadata.id)
    except PluginError as e:
        raise _http_error(e)
    return _info(manager, metadata.id)


@plugins_router.post("/{plugin_id}/enable")
async def enable_plugin(plugin_id: str):
    manager = _manager()
    try:
        await manager.enable_plugin(plugin_id)
    except PluginError as e:
        raise _http_error(e)
    return {"status": "enabled", "plugin_id": plugin_id}


@plugins_router.post("/{plugin_id}/disable")
async def disable_plugin(plugin_id: str):
    manager = _manager()
    try:
        await manager.disable_plugin(plugin_id)
    except PluginError as e:
        raise _http_error(e)
    return {"status": "disabled", "plugin_id": plugin_id}


@plugins_router.post("/{plugin_id}/update")
async def update_plugin(plugin_id: str, payload: PluginUpdateRequest):
    manager = _manager()
    try:
        await manager.update_plugin(plugin_id, payload.version)
    except PluginError as e:
        raise _http_error(e)
    return {"status": "updated", "plugin_id": plugin_id, "version": payload.version}


@plugins_router.delete("/{plugin_id}")
async def uninstall_plugin(plugin_id: str):
    manager = _manager()
    try:
        await manager.uninstall_plugin(plugin_id)
    except PluginError as e:
        raise _http_error(e)
    return {"status": "uninstalled", "plugin_id": plugin_id}
