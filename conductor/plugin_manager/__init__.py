"""
Plugin lifecycle and sandboxing.

Loads third-party plugins from a plugins root, validates their manifests,
optionally runs them in a restricted interpreter, and dispatches lifecycle
and task hooks to enabled plugins.
"""

from .exceptions import (
    HookError,
    LifecycleError,
    ManifestValidationError,
    PluginAlreadyLoadedError,
    PluginError,
    PluginLoadError,
    PluginNotFoundError,
    SandboxError,
)
from .manager import PluginManager
from .models import (
    LifecycleHook,
    PluginHook,
    PluginManifest,
    PluginRegistryEntry,
    PluginState,
    ValidationResult,
)
from .registry import PluginRegistry
from .sandbox import PluginSandbox, SandboxOptions
from .validator import PluginValidator

__all__ = [
    "HookError",
    "LifecycleError",
    "LifecycleHook",
    "ManifestValidationError",
    "PluginAlreadyLoadedError",
    "PluginError",
    "PluginHook",
    "PluginLoadError",
    "PluginManager",
    "PluginManifest",
    "PluginNotFoundError",
    "PluginRegistry",
    "PluginRegistryEntry",
    "PluginSandbox",
    "PluginState",
    "PluginValidator",
    "SandboxError",
    "SandboxOptions",
    "ValidationResult",
]
