"""Ingest routes for role observations, departures and identity links."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from rolesync.db.dependencies import get_db
from rolesync.runtime import SyncRuntime, get_runtime
from rolesync.schemas.common import ApiResponse
from rolesync.schemas.identity_link import (
    ConfidenceAdjustRequest,
    IdentityLinkRead,
    LinkChangeRead,
    UnverifiedLinkRequest,
    VerifiedLinkRequest,
)
from rolesync.schemas.role_sync import (
    DepartureRequest,
    DepartureResultRead,
    RoleObservationRequest,
    RoleSyncResultRead,
)
from rolesync.services.account_linking import LinkChangeOutcome
from rolesync.services.identity_links import list_links_for_chat_user
from rolesync.services.role_sync import RoleObservation

router = APIRouter()


@router.post("/role-observations", response_model=ApiResponse[RoleSyncResultRead])
def post_role_observation(
    payload: RoleObservationRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[RoleSyncResultRead]:
    """Reconcile one "user now has / lacks role" observation."""

    try:
        result = runtime.reconciler.handle_observation(
            RoleObservation(chat_user_id=payload.chat_user_id, role=payload.role, added=payload.added)
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=RoleSyncResultRead.model_validate(result))


@router.post("/departures", response_model=ApiResponse[DepartureResultRead])
def post_departure(
    payload: DepartureRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[DepartureResultRead]:
    """Revoke role-sourced access of a chat user who left."""

    try:
        result = runtime.departures.handle_departure(payload.chat_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=DepartureResultRead.model_validate(result))


@router.post("/identity-links/verified", response_model=ApiResponse[LinkChangeRead])
def post_verified_link(
    payload: VerifiedLinkRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[LinkChangeRead]:
    """Record a self- or admin-verified link and reconcile its consequences."""

    try:
        outcome = runtime.linking.link_verified(
            chat_user_id=payload.chat_user_id,
            game_id=payload.game_id,
            source=payload.source,
            actor_id=payload.actor_id,
            metadata=payload.metadata,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=_link_change_read(outcome))


@router.post("/identity-links/unverified", response_model=ApiResponse[LinkChangeRead])
def post_unverified_link(
    payload: UnverifiedLinkRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[LinkChangeRead]:
    """Record a low-confidence (text-extracted or imported) link."""

    try:
        outcome = runtime.linking.link_unverified(
            chat_user_id=payload.chat_user_id,
            game_id=payload.game_id,
            source=payload.source,
            confidence=payload.confidence,
            actor_id=payload.actor_id,
            metadata=payload.metadata,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=_link_change_read(outcome))


@router.patch("/identity-links/{link_id}/confidence", response_model=ApiResponse[LinkChangeRead])
def patch_link_confidence(
    link_id: int,
    payload: ConfidenceAdjustRequest,
    runtime: SyncRuntime = Depends(get_runtime),
) -> ApiResponse[LinkChangeRead]:
    """Admin confidence override; raising it re-checks security-blocked entries."""

    try:
        outcome = runtime.linking.adjust_confidence(
            link_id,
            confidence=payload.confidence,
            actor_id=payload.actor_id,
            reason=payload.reason,
            allow_decrease=payload.allow_decrease,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if outcome is None:
        raise HTTPException(status_code=404, detail="Identity link not found")
    return ApiResponse(data=_link_change_read(outcome))


@router.get("/identity-links/{chat_user_id}", response_model=ApiResponse[list[IdentityLinkRead]])
def get_identity_links(chat_user_id: str, db: Session = Depends(get_db)) -> ApiResponse[list[IdentityLinkRead]]:
    links = list_links_for_chat_user(db, chat_user_id)
    return ApiResponse(data=[IdentityLinkRead.model_validate(link) for link in links])


def _link_change_read(outcome: LinkChangeOutcome) -> LinkChangeRead:
    return LinkChangeRead(
        link_id=outcome.link_id,
        chat_user_id=outcome.chat_user_id,
        game_id=outcome.game_id,
        confidence=outcome.confidence,
        source=outcome.source,
        is_primary=outcome.is_primary,
        created=outcome.created,
        previous_confidence=outcome.previous_confidence,
        confidence_increased=outcome.confidence_increased,
        became_primary=outcome.became_primary,
        resync_outcomes=[result.outcome for result in outcome.role_sync_results],
        upgraded_entry_ids=list(outcome.revalidation.upgraded_entry_ids) if outcome.revalidation else [],
    )
