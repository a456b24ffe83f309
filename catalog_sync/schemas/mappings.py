from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CanonicalType = Literal["product", "plant", "offer"]


class MappingRequest(BaseModel):
    canonical_type: CanonicalType
    canonical_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=2000)


class MappingOut(BaseModel):
    entity_id: str
    entity_type: str | None = None
    canonical_type: CanonicalType
    canonical_id: str
    match_method: str
    confidence: int
    notes: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime


class AdminActionOut(BaseModel):
    id: int
    actor_user_id: str
    action: str
    target_type: str
    target_id: str
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MappingChangeOut(BaseModel):
    entity_id: str
    mapping: MappingOut | None = None
    previous_mapping: MappingOut | None = None
    admin_action: AdminActionOut
