"""Link-change orchestration: persist the link, then run the matching re-check."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from rolesync.services.audit import SYSTEM_ACTOR_ID
from rolesync.services.cache import CacheInvalidationNotifier
from rolesync.services.identity_links import (
    LinkUpsertResult,
    adjust_link_confidence,
    record_unverified_link,
    upsert_verified_link,
)
from rolesync.services.revalidation import ConfidenceUpgradeRevalidator, RevalidationResult
from rolesync.services.role_sync import RoleSyncReconciler, RoleSyncResult
from rolesync.services.transactions import SessionFactory, reconciliation_pass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LinkChangeOutcome:
    """Committed link state plus whatever downstream reconciliation it triggered."""

    link_id: int
    chat_user_id: str
    game_id: str
    confidence: float
    source: str
    is_primary: bool
    created: bool
    previous_confidence: float | None = None
    confidence_increased: bool = False
    confidence_decreased: bool = False
    became_primary: bool = False
    demoted_chat_user_ids: list[str] = field(default_factory=list)
    role_sync_results: list[RoleSyncResult] = field(default_factory=list)
    revalidation: RevalidationResult | None = None


class AccountLinkingService:
    """Runs the ledger re-check that matches each kind of committed link change."""

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: CacheInvalidationNotifier,
        reconciler: RoleSyncReconciler,
        revalidator: ConfidenceUpgradeRevalidator,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._reconciler = reconciler
        self._revalidator = revalidator

    def link_verified(
        self,
        *,
        chat_user_id: str,
        game_id: str,
        source: str,
        actor_id: str = SYSTEM_ACTOR_ID,
        metadata: dict[str, Any] | None = None,
    ) -> LinkChangeOutcome:
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="identity_link.verify",
            subject=chat_user_id,
        ) as (db, batch):
            upsert = upsert_verified_link(
                db,
                chat_user_id=chat_user_id,
                game_id=game_id,
                source=source,
                actor_id=actor_id,
                metadata=metadata,
            )
            outcome = _capture(upsert)
            batch.add_chat_user_id(outcome.chat_user_id)
            batch.add_game_id(outcome.game_id)
        return self._follow_up(outcome)

    def link_unverified(
        self,
        *,
        chat_user_id: str,
        game_id: str,
        source: str,
        confidence: float | None = None,
        actor_id: str = SYSTEM_ACTOR_ID,
        metadata: dict[str, Any] | None = None,
    ) -> LinkChangeOutcome:
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="identity_link.record",
            subject=chat_user_id,
        ) as (db, batch):
            upsert = record_unverified_link(
                db,
                chat_user_id=chat_user_id,
                game_id=game_id,
                source=source,
                confidence=confidence,
                actor_id=actor_id,
                metadata=metadata,
            )
            outcome = _capture(upsert)
            batch.add_chat_user_id(outcome.chat_user_id)
            batch.add_game_id(outcome.game_id)
        return self._follow_up(outcome)

    def adjust_confidence(
        self,
        link_id: int,
        *,
        confidence: float,
        actor_id: str,
        reason: str,
        allow_decrease: bool = False,
    ) -> LinkChangeOutcome | None:
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="identity_link.adjust",
            subject=str(link_id),
        ) as (db, batch):
            upsert = adjust_link_confidence(
                db,
                link_id,
                confidence=confidence,
                actor_id=actor_id,
                reason=reason,
                allow_decrease=allow_decrease,
            )
            if upsert is None:
                return None
            outcome = _capture(upsert)
            batch.add_chat_user_id(outcome.chat_user_id)
            batch.add_game_id(outcome.game_id)
        return self._follow_up(outcome)

    def _follow_up(self, outcome: LinkChangeOutcome) -> LinkChangeOutcome:
        if outcome.confidence_increased:
            outcome.revalidation = self._revalidator.handle_confidence_increase(
                chat_user_id=outcome.chat_user_id,
                game_id=outcome.game_id,
                previous_confidence=outcome.previous_confidence or 0.0,
                new_confidence=outcome.confidence,
            )
        if outcome.created or outcome.became_primary:
            outcome.role_sync_results = self._reconciler.sync_user_from_membership(outcome.chat_user_id)
        elif outcome.confidence_decreased and outcome.is_primary:
            # Approved grants on this link may now sit below their tier threshold.
            outcome.role_sync_results = self._reconciler.reevaluate_active_roles(outcome.chat_user_id)

        for demoted_chat_user_id in outcome.demoted_chat_user_ids:
            # Their grants on this game id lost the authoritative link.
            outcome.role_sync_results.extend(self._reconciler.reevaluate_active_roles(demoted_chat_user_id))

        logger.info(
            (
                "identity_link.reconciled chat_user_id=%s game_id=%s created=%s "
                "confidence_increased=%s confidence_decreased=%s resync_passes=%d upgraded=%d"
            ),
            outcome.chat_user_id,
            outcome.game_id,
            outcome.created,
            outcome.confidence_increased,
            outcome.confidence_decreased,
            len(outcome.role_sync_results),
            len(outcome.revalidation.upgraded_entry_ids) if outcome.revalidation else 0,
        )
        return outcome


def _capture(upsert: LinkUpsertResult) -> LinkChangeOutcome:
    link = upsert.link
    return LinkChangeOutcome(
        link_id=link.id,
        chat_user_id=link.chat_user_id,
        game_id=link.game_id,
        confidence=link.confidence_score,
        source=link.source,
        is_primary=link.is_primary,
        created=upsert.created,
        previous_confidence=upsert.previous_confidence,
        confidence_increased=upsert.confidence_increased,
        confidence_decreased=upsert.confidence_decreased,
        became_primary=upsert.became_primary,
        demoted_chat_user_ids=list(upsert.demoted_chat_user_ids),
    )
