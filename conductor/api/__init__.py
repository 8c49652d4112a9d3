"""
Admin HTTP surface for the plugin system.

Lists, loads, enables, disables, updates and uninstalls plugins.
"""

from .plugins import configure_plugins_api, plugins_router
from .models import PluginLoadRequest, PluginUpdateRequest  # re-export

__all__ = [
    "configure_plugins_api",
    "plugins_router",
    "PluginLoadRequest",
    "PluginUpdateRequest",
]
