from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, Field


class ForceGcRequest(BaseModel):
    generation: int = Field(default=2, ge=0, le=2)


class HeapCeilingRequest(BaseModel):
    limit_mb: int = Field(ge=1, le=1_048_576)


class LargeObjectRequest(BaseModel):
    id: str = Field(min_length=1, max_length=256)
    size_bytes: int = Field(ge=0)
    type_tag: str = Field(min_length=1, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)
