"""Environment-driven configuration for the plugin system."""

from __future__ import annotations

import json
import os
from typing import Any, List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field


class ConfigProvider(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
    def get_bool(self, key: str, default: bool = False) -> bool: ...
    def get_int(self, key: str, default: int = 0) -> int: ...
    def get_list(self, key: str, default: Optional[List[str]] = None) -> List[str]: ...


def _split_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class EnvConfigProvider:
    def get(self, key: str, default: Any = None) -> Any:
        v = os.getenv(key)
        if v is None:
            return default
        lv = v.lower()
        if lv in ("true", "false"):
            return lv == "true"
        try:
            return int(v)
        except ValueError:
            try:
                return json.loads(v)
            except ValueError:
                return v

    def get_bool(self, key: str, default: bool = False) -> bool:
        v = os.getenv(key)
        return default if v is None else v.strip().lower() in ("1", "true", "yes", "on")

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(os.getenv(key, ""))
        except ValueError:
            return default

    def get_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        v = os.getenv(key)
        if v is None:
            return list(default or [])
        return _split_list(v)


class InMemoryConfigProvider:
    def __init__(self, data: Optional[Mapping[str, Any]] = None) -> None:
        self.data = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        v = self.data.get(key, None)
        if v is None:
            return default
        if isinstance(v, str):
            return v.strip().lower() in ("1", "true", "yes", "on")
        return bool(v)

    def get_int(self, key: str, default: int = 0) -> int:
        v = self.data.get(key, None)
        try:
            return int(v)
        except (TypeError, ValueError):
            return default

    def get_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        v = self.data.get(key, None)
        if v is None:
            return list(default or [])
        return _split_list(v)


class PluginSystemSettings(BaseModel):
    """Settings the composition root hands to ``PluginManager``."""

    plugins_dir: str = "./plugins"
    enable_sandbox: bool = True
    auto_load: bool = True
    restore_enabled: bool = False
    allowed_permissions: List[str] = Field(default_factory=list)
    sandbox_timeout_ms: int = 5000
    sandbox_memory_mb: int = 128
    # Unset: sandboxed hooks fall back to sandbox_timeout_ms, trusted ones are unbounded
    hook_timeout_ms: Optional[int] = None
    log_level: str = "INFO"

    @classmethod
    def from_provider(
        cls, provider: Optional[ConfigProvider] = None
    ) -> "PluginSystemSettings":
        p = provider or EnvConfigProvider()
        defaults = cls()
        hook_timeout = p.get_int("PLUGIN_HOOK_TIMEOUT_MS", 0)
        return cls(
            plugins_dir=str(p.get("PLUGINS_DIR", defaults.plugins_dir)),
            enable_sandbox=p.get_bool("PLUGINS_ENABLE_SANDBOX", defaults.enable_sandbox),
            auto_load=p.get_bool("PLUGINS_AUTO_LOAD", defaults.auto_load),
            restore_enabled=p.get_bool("PLUGINS_RESTORE_ENABLED", defaults.restore_enabled),
            allowed_permissions=p.get_list("PLUGINS_ALLOWED_PERMISSIONS"),
            sandbox_timeout_ms=p.get_int("PLUGIN_SANDBOX_TIMEOUT_MS", defaults.sandbox_timeout_ms),
            sandbox_memory_mb=p.get_int("PLUGIN_SANDBOX_MEMORY_MB", defaults.sandbox_memory_mb),
            hook_timeout_ms=hook_timeout or None,
            log_level=str(p.get("LOG_LEVEL", defaults.log_level)).upper(),
        )
