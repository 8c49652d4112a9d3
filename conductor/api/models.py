from __future__ import annotations

from pydantic import BaseModel, Field


class PluginLoadRequest(BaseModel):
    path: str = Field(..., max_length=1024)
    enable: bool = False


class PluginUpdateRequest(BaseModel):
    version: str = Field(..., max_length=64)
