# app/transport/schemas.py
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DownloadIn(BaseModel):
    """POST /download body. ``reelURL`` is the historical field name."""
    model_config = ConfigDict(populate_by_name=True)

    url: str | None = Field(default=None, alias="reelURL", max_length=2048)

    @property
    def target(self) -> str:
        return (self.url or "").strip()


class DownloadOut(BaseModel):
    success: bool = True
    downloadUrl: str
    cached: bool
    originalUrl: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class DownloadErrorOut(BaseModel):
    success: bool = False
    error: str
    category: str
    details: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
