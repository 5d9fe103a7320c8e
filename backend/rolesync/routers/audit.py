"""Audit stream route."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rolesync.db.dependencies import get_db
from rolesync.schemas.audit_entry import AuditEntryRead
from rolesync.schemas.common import ApiResponse, StreamCursor
from rolesync.services.audit import list_audit_entries

router = APIRouter()


@router.get("/audit", response_model=ApiResponse[list[AuditEntryRead]])
def get_audit_stream(
    after_id: int | None = Query(default=None, ge=0),
    target_id: str | None = Query(default=None, min_length=1),
    action_type: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> ApiResponse[list[AuditEntryRead]]:
    """Audit entries in commit order; pass the last seen id as after_id to resume."""

    records = list_audit_entries(
        db,
        after_id=after_id,
        target_id=target_id,
        action_type=action_type,
        limit=limit,
    )
    return ApiResponse(
        data=[AuditEntryRead.model_validate(record) for record in records],
        cursor=StreamCursor(
            next_after_id=records[-1].id if records else after_id,
            count=len(records),
        ),
    )
