from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class IdentityCreate(BaseModel):
    identity_id: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=120)
    descriptors: list[list[float]] = Field(min_length=1)
    metadata: dict[str, Any] = {}


class DescriptorAdd(BaseModel):
    descriptor: list[float] = Field(min_length=1)


class IdentityResponse(BaseModel):
    identity_id: str
    display_name: str
    metadata: dict[str, Any] = {}
    is_active: bool
    descriptor_count: int


class IdentityRemovedResponse(BaseModel):
    ok: bool = True
    removed: bool
