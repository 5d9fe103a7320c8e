"""Role observation and departure ingestion schemas."""

from pydantic import BaseModel, ConfigDict, Field


class RoleObservationRequest(BaseModel):
    chat_user_id: str = Field(min_length=1, max_length=64)
    role: str = Field(min_length=1, max_length=64)
    added: bool


class RoleSyncResultRead(BaseModel):
    """Decision of one reconciliation pass."""

    model_config = ConfigDict(from_attributes=True)

    chat_user_id: str
    role: str
    added: bool
    outcome: str
    entry_id: int | None
    game_id: str | None


class DepartureRequest(BaseModel):
    chat_user_id: str = Field(min_length=1, max_length=64)


class DepartureResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chat_user_id: str
    revoked_entry_ids: list[int]
    game_ids: list[str]
    audit_id: int | None
