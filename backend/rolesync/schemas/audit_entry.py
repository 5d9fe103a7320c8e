"""Audit stream response schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AuditEntryRead(BaseModel):
    """Serialized audit record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    action_type: str
    actor_type: str
    actor_id: str
    target_type: str
    target_id: str
    description: str
    before_json: dict[str, object] | None
    after_json: dict[str, object] | None
    severity: str
    metadata_json: dict[str, object]
    created_at: datetime
