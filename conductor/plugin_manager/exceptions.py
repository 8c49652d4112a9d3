"""
Plugin system error taxonomy.

Validation and structural errors are fatal to the operation that triggered
them and reach the administrative caller. Hook errors are contained by the
manager and only ever logged.
"""

from typing import List, Optional


class PluginError(Exception):
    """Base class for all plugin system errors."""


class ManifestValidationError(PluginError):
    """Manifest, permission, schema or code-scan validation failed."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.errors = list(errors or [])
        self.warnings = list(warnings or [])


class PluginLoadError(PluginError):
    """Entry-point resolution or instantiation failed for one plugin."""

    def __init__(self, message: str, plugin_path: Optional[str] = None):
        super().__init__(message)
        self.plugin_path = plugin_path


class SandboxError(PluginError):
    """Timeout or fault raised inside isolated execution."""

    def __init__(self, message: str, plugin_id: Optional[str] = None):
        super().__init__(message)
        self.plugin_id = plugin_id


class LifecycleError(PluginError):
    """Operation on an unknown id or an invalid state transition."""

    def __init__(self, message: str, plugin_id: Optional[str] = None):
        super().__init__(message)
        self.plugin_id = plugin_id


class PluginNotFoundError(LifecycleError):
    def __init__(self, plugin_id: str, where: str = "loaded plugins"):
        super().__init__(f"Plugin {plugin_id} not found in {where}", plugin_id)


class PluginAlreadyLoadedError(LifecycleError):
    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin {plugin_id} is already loaded", plugin_id)


class HookError(PluginError):
    """A single plugin's hook raised. Never propagated out of call_hook."""

    def __init__(self, plugin_id: str, hook_name: str, cause: BaseException):
        super().__init__(f"Hook {hook_name} failed for plugin {plugin_id}: {cause}")
        self.plugin_id = plugin_id
        self.hook_name = hook_name
        self.cause = cause
