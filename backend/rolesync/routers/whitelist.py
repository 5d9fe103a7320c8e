"""Whitelist read API and operator ledger routes."""

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from rolesync.db.dependencies import get_db
from rolesync.policy.game_identity import InvalidGameIdError, validate_game_id
from rolesync.runtime import SyncRuntime, get_runtime
from rolesync.schemas.common import ApiResponse
from rolesync.schemas.whitelist import (
    ExtendRequest,
    ManualGrantRequest,
    RepairRequest,
    RevokeRequest,
    WhitelistEntryRead,
    WhitelistStatusRead,
)
from rolesync.services.ledger import (
    LedgerValidationError,
    get_whitelist_status,
    list_entries_for_game,
    list_unlinked_placeholders,
)

router = APIRouter(prefix="/whitelist")


@router.get("/placeholders", response_model=ApiResponse[list[WhitelistEntryRead]])
def get_placeholders(
    chat_user_id: str | None = Query(default=None, min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[list[WhitelistEntryRead]]:
    """Role holders with no linked game identity, awaiting a link."""

    return ApiResponse(
        data=[WhitelistEntryRead.model_validate(entry) for entry in list_unlinked_placeholders(db, chat_user_id)]
    )


@router.get("/{game_id}/status", response_model=ApiResponse[WhitelistStatusRead])
def get_status(
    game_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[WhitelistStatusRead]:
    """Derived {status, expiration, entry_count} for one game id."""

    clean_game_id = _clean_game_id(game_id)
    status = runtime.status_cache.get_or_load(clean_game_id, lambda: get_whitelist_status(db, clean_game_id))
    return ApiResponse(
        data=WhitelistStatusRead(
            game_id=clean_game_id,
            status=status.status,
            expiration=status.expiration,
            entry_count=status.entry_count,
        )
    )


@router.get("/{game_id}/entries", response_model=ApiResponse[list[WhitelistEntryRead]])
def get_entries(
    game_id: str = Path(..., min_length=1),
    db: Session = Depends(get_db),
) -> ApiResponse[list[WhitelistEntryRead]]:
    """Full ledger history for one game id, oldest grant first."""

    clean_game_id = _clean_game_id(game_id)
    return ApiResponse(
        data=[WhitelistEntryRead.model_validate(entry) for entry in list_entries_for_game(db, clean_game_id)]
    )


@router.post("/grants", response_model=ApiResponse[WhitelistEntryRead])
def post_grant(
    payload: ManualGrantRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[WhitelistEntryRead]:
    """Operator grant (manual, donation or import source)."""

    try:
        entry = runtime.admin.grant(
            game_id=payload.game_id,
            granted_by=payload.granted_by,
            entry_type=payload.entry_type,
            source=payload.source,
            duration_value=payload.duration_value,
            duration_type=payload.duration_type,
            reason=payload.reason,
            chat_user_id=payload.chat_user_id,
            metadata=payload.metadata,
        )
    except (InvalidGameIdError, LedgerValidationError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=entry)


@router.post("/{game_id}/extend", response_model=ApiResponse[WhitelistEntryRead])
def post_extend(
    payload: ExtendRequest,
    game_id: str = Path(..., min_length=1),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[WhitelistEntryRead]:
    """Append a stacked extension to an existing whitelist."""

    try:
        entry = runtime.admin.extend(
            game_id=game_id,
            duration_value=payload.duration_value,
            duration_type=payload.duration_type,
            granted_by=payload.granted_by,
            reason=payload.reason,
        )
    except (InvalidGameIdError, LedgerValidationError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=entry)


@router.post("/{game_id}/revoke", response_model=ApiResponse[list[WhitelistEntryRead]])
def post_revoke(
    payload: RevokeRequest,
    game_id: str = Path(..., min_length=1),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[list[WhitelistEntryRead]]:
    """Revoke operator-managed entries; role entries are left to role sync."""

    try:
        entries = runtime.admin.revoke(game_id=game_id, revoked_by=payload.revoked_by, reason=payload.reason)
    except InvalidGameIdError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=entries)


@router.patch("/entries/{entry_id}", response_model=ApiResponse[WhitelistEntryRead])
def patch_entry(
    payload: RepairRequest,
    entry_id: int = Path(..., ge=1),
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[WhitelistEntryRead]:
    """Stacking repair of one entry's grant time and duration."""

    try:
        entry = runtime.admin.repair(
            entry_id,
            duration_value=payload.duration_value,
            duration_type=payload.duration_type,
            granted_at=payload.granted_at,
            actor_id=payload.actor_id,
            reason=payload.reason,
        )
    except LedgerValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if entry is None:
        raise HTTPException(status_code=404, detail="Whitelist entry not found")
    return ApiResponse(data=entry)


def _clean_game_id(game_id: str) -> str:
    try:
        return validate_game_id(game_id)
    except InvalidGameIdError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
