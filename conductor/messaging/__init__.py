"""
Host-side messaging for the plugin system.

Plugin lifecycle notifications, plugin-scoped events and UI registration
requests all travel over the ``NotificationBus``.
"""

from .event_bus import NotificationBus

__all__ = ["NotificationBus"]
