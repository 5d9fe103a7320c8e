"""Identity link request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IdentityLinkRead(BaseModel):
    """Serialized identity link."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    chat_user_id: str
    game_id: str
    confidence_score: float
    source: str
    is_primary: bool
    metadata_json: dict[str, object]
    created_at: datetime
    updated_at: datetime


class VerifiedLinkRequest(BaseModel):
    chat_user_id: str = Field(min_length=1, max_length=64)
    game_id: str = Field(min_length=1)
    source: Literal["self-verified", "admin-manual"] = "self-verified"
    actor_id: str = Field(default="SYSTEM", min_length=1, max_length=64)
    metadata: dict[str, object] = Field(default_factory=dict)


class UnverifiedLinkRequest(BaseModel):
    chat_user_id: str = Field(min_length=1, max_length=64)
    game_id: str = Field(min_length=1)
    source: Literal["text-extracted", "imported"] = "text-extracted"
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    actor_id: str = Field(default="SYSTEM", min_length=1, max_length=64)
    metadata: dict[str, object] = Field(default_factory=dict)


class LinkChangeRead(BaseModel):
    """Committed link state and the reconciliation it triggered."""

    model_config = ConfigDict(from_attributes=True)

    link_id: int
    chat_user_id: str
    game_id: str
    confidence: float
    source: str
    is_primary: bool
    created: bool
    previous_confidence: float | None
    confidence_increased: bool
    became_primary: bool
    resync_outcomes: list[str] = Field(default_factory=list)
    upgraded_entry_ids: list[int] = Field(default_factory=list)


class ConfidenceAdjustRequest(BaseModel):
    """Admin override of a link's confidence score."""

    confidence: float = Field(ge=0.0, le=1.0)
    actor_id: str = Field(min_length=1, max_length=64)
    reason: str = Field(min_length=1)
    allow_decrease: bool = False
