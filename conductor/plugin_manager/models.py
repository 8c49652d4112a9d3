"""
Plugin manager data models.

Manifests are read from ``plugin.json`` with camelCase keys; the models
expose snake_case attributes and dump back to camelCase.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )


class PluginState(str, Enum):
    """Lifecycle states tracked by the manager."""

    UNLOADED = "unloaded"
    LOADED = "loaded"
    ENABLED = "enabled"


class LifecycleHook(str, Enum):
    """Hooks fired by the manager on state transitions."""

    ON_INSTALL = "on_install"
    ON_ENABLE = "on_enable"
    ON_DISABLE = "on_disable"
    ON_UNINSTALL = "on_uninstall"
    ON_UPDATE = "on_update"


class PluginHook(str, Enum):
    """Task-processing extension points dispatched through ``call_hook``."""

    BEFORE_TASK_CREATE = "before_task_create"
    AFTER_TASK_CREATE = "after_task_create"
    BEFORE_TASK_EXECUTE = "before_task_execute"
    AFTER_TASK_EXECUTE = "after_task_execute"
    BEFORE_RESULT_SAVE = "before_result_save"
    AFTER_RESULT_SAVE = "after_result_save"
    HANDLE_TASK = "handle_task"


class PluginMetadata(_CamelModel):
    id: str
    name: str
    version: str
    author: str
    description: Optional[str] = None
    license: Optional[str] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    dependencies: Dict[str, str] = Field(default_factory=dict)


class PluginCapabilities(_CamelModel):
    """Declared capabilities. Informational only, not enforced."""

    supported_task_types: List[str] = Field(default_factory=list)
    supported_adapters: List[str] = Field(default_factory=list)
    custom_task_types: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)


class FilesystemPermissions(_CamelModel):
    read: List[str] = Field(default_factory=list)
    write: List[str] = Field(default_factory=list)


class NetworkPermissions(_CamelModel):
    hosts: List[str] = Field(default_factory=list)


class SystemPermissions(_CamelModel):
    env: List[str] = Field(default_factory=list)
    exec: bool = False


class PluginPermissions(_CamelModel):
    filesystem: Optional[FilesystemPermissions] = None
    network: Optional[NetworkPermissions] = None
    system: Optional[SystemPermissions] = None

    def granted_groups(self) -> List[str]:
        """Permission groups that unlock extra sandbox modules."""
        groups: List[str] = []
        if self.filesystem and (self.filesystem.read or self.filesystem.write):
            groups.append("filesystem")
        if self.network and self.network.hosts:
            groups.append("network")
        if self.system and self.system.exec:
            groups.append("process")
        return groups


ConfigPropertyType = Literal["string", "number", "boolean", "array", "object"]


class ConfigurationProperty(_CamelModel):
    type: ConfigPropertyType
    title: Optional[str] = None
    description: Optional[str] = None
    default: Any = None
    required: bool = False
    enum: Optional[List[Any]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    pattern: Optional[str] = None


class PluginConfigurationSchema(_CamelModel):
    properties: Dict[str, ConfigurationProperty] = Field(default_factory=dict)

    def defaults(self) -> Dict[str, Any]:
        return {
            key: prop.default
            for key, prop in self.properties.items()
            if prop.default is not None
        }


class PluginManifest(_CamelModel):
    """Declarative plugin descriptor, authoritative over plugin code."""

    metadata: PluginMetadata
    capabilities: PluginCapabilities
    main: str
    permissions: Optional[PluginPermissions] = None
    configuration: Optional[PluginConfigurationSchema] = None


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PluginRegistryEntry(_CamelModel):
    """Durable catalogue record, independent of in-memory load state."""

    id: str
    name: str
    version: str
    path: str
    enabled: bool = False
    installed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PluginInfo(_CamelModel):
    """Combined view of a plugin for the admin surface."""

    id: str
    name: str
    version: str
    state: PluginState
    path: Optional[str] = None
    installed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    capabilities: Optional[PluginCapabilities] = None
