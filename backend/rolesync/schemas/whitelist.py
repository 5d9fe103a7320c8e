"""Whitelist ledger request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WhitelistStatusRead(BaseModel):
    """Derived privilege status for one game id."""

    game_id: str
    status: Literal["permanent", "active", "expired", "revoked", "none"]
    expiration: datetime | None
    entry_count: int


class WhitelistEntryRead(BaseModel):
    """Serialized ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    game_id: str | None
    chat_user_id: str | None
    type: str
    source: str
    role_name: str | None
    duration_value: int | None
    duration_type: str | None
    reason: str | None
    granted_by: str
    granted_at: datetime
    approved: bool
    revoked: bool
    revoked_by: str | None
    revoked_at: datetime | None
    revoked_reason: str | None
    block_reason: str | None
    metadata_json: dict[str, object]


class _DurationFields(BaseModel):
    duration_value: int | None = Field(default=None, ge=0)
    duration_type: Literal["hours", "days", "months"] | None = None

    @model_validator(mode="after")
    def validate_duration_pair(self) -> "_DurationFields":
        if (self.duration_value is None) != (self.duration_type is None):
            raise ValueError("duration_value and duration_type must be provided together.")
        return self


class ManualGrantRequest(_DurationFields):
    """Operator grant; a null duration pair means permanent."""

    game_id: str = Field(min_length=1)
    entry_type: Literal["staff", "general"] = "general"
    source: Literal["manual", "donation", "import"] = "manual"
    granted_by: str = Field(min_length=1, max_length=64)
    reason: str | None = None
    chat_user_id: str | None = Field(default=None, max_length=64)
    metadata: dict[str, object] = Field(default_factory=dict)


class ExtendRequest(BaseModel):
    """Append a stacked extension to an existing whitelist history."""

    duration_value: int = Field(ge=1)
    duration_type: Literal["hours", "days", "months"]
    granted_by: str = Field(min_length=1, max_length=64)
    reason: str | None = None


class RevokeRequest(BaseModel):
    """Operator revocation of non-role entries."""

    revoked_by: str = Field(min_length=1, max_length=64)
    reason: str = Field(min_length=1)


class RepairRequest(_DurationFields):
    """Explicit stacking repair of one entry's grant time and duration."""

    granted_at: datetime | None = None
    actor_id: str = Field(min_length=1, max_length=64)
    reason: str = Field(min_length=1)
