"""Confidence-upgrade revalidator for security-blocked role entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from rolesync.config import get_settings
from rolesync.models.identity_link import IdentityLink
from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.policy.role_tiers import RoleTierPolicy, meets_threshold
from rolesync.services.audit import ACTION_SECURITY_UPGRADE, record_audit, snapshot_entry
from rolesync.services.cache import CacheInvalidationNotifier
from rolesync.services.debounce import KeyedDebouncer
from rolesync.services.identity_links import get_link
from rolesync.services.ledger import (
    BLOCK_INSUFFICIENT_CONFIDENCE,
    approve_entry,
    find_active_role_entry,
    get_entry,
    list_security_blocked_entries,
)
from rolesync.services.membership import MembershipSnapshot, MembershipSource, lookup_current_roles
from rolesync.services.transactions import SessionFactory, reconciliation_pass

logger = logging.getLogger(__name__)

SKIP_MEMBERSHIP_UNCONFIRMED = "membership_unconfirmed"
SKIP_MEMBER_NOT_FOUND = "member_not_found"
SKIP_NO_LONGER_BLOCKED = "no_longer_blocked"
SKIP_GAME_ID_MISMATCH = "game_id_mismatch"
SKIP_LINK_NOT_PRIMARY = "link_not_primary"
SKIP_ROLE_UNTRACKED = "role_untracked"
SKIP_ROLE_NOT_HELD = "role_not_held"
SKIP_INSUFFICIENT_CONFIDENCE = "insufficient_confidence"
SKIP_ACTIVE_ENTRY_EXISTS = "active_entry_exists"


@dataclass(slots=True)
class RevalidationResult:
    """Per-entry decisions of one upgrade pass."""

    chat_user_id: str
    game_id: str
    confirmed: bool = False
    upgraded_entry_ids: list[int] = field(default_factory=list)
    skipped: dict[int, str] = field(default_factory=dict)


class ConfidenceUpgradeRevalidator:
    """Re-evaluate blocked entries after a link's confidence strictly increases.

    Approval requires a live membership confirmation; lookup failure, timeout,
    departure or a missing role all leave the entry blocked.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: CacheInvalidationNotifier,
        membership_source: MembershipSource,
        *,
        policy: RoleTierPolicy | None = None,
        lookup_timeout_seconds: float | None = None,
        debouncer: KeyedDebouncer | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._notifier = notifier
        self._membership_source = membership_source
        self.policy = policy or RoleTierPolicy.from_settings(settings)
        self._lookup_timeout_seconds = (
            lookup_timeout_seconds
            if lookup_timeout_seconds is not None
            else settings.membership_lookup_timeout_seconds
        )
        self._debouncer = debouncer or KeyedDebouncer(settings.role_sync_debounce_seconds)

    def handle_confidence_increase(
        self,
        *,
        chat_user_id: str,
        game_id: str,
        previous_confidence: float,
        new_confidence: float,
    ) -> RevalidationResult:
        result = RevalidationResult(chat_user_id=chat_user_id, game_id=game_id)
        if round(new_confidence, 2) <= round(previous_confidence, 2):
            return result

        # Role observations for this user wait until the decision below commits,
        # so the membership snapshot cannot go stale between lookup and approval.
        with self._debouncer.serialize(chat_user_id):
            db = self._session_factory()
            try:
                candidate_ids = [
                    entry.id
                    for entry in list_security_blocked_entries(db, game_id=game_id, chat_user_id=chat_user_id)
                ]
            finally:
                db.close()
            if not candidate_ids:
                return result

            snapshot = lookup_current_roles(
                self._membership_source,
                chat_user_id,
                timeout_seconds=self._lookup_timeout_seconds,
            )
            if snapshot is None or not snapshot.found:
                reason = SKIP_MEMBERSHIP_UNCONFIRMED if snapshot is None else SKIP_MEMBER_NOT_FOUND
                result.skipped = {entry_id: reason for entry_id in candidate_ids}
                logger.warning(
                    "revalidation.fail_closed chat_user_id=%s game_id=%s reason=%s blocked_entries=%d",
                    chat_user_id,
                    game_id,
                    reason,
                    len(candidate_ids),
                )
                return result
            result.confirmed = True

            with reconciliation_pass(
                self._session_factory,
                self._notifier,
                operation="revalidation",
                subject=chat_user_id,
            ) as (db, batch):
                link = get_link(db, chat_user_id=chat_user_id, game_id=game_id)
                approved_roles: set[str] = set()
                for entry_id in candidate_ids:
                    entry = get_entry(db, entry_id)
                    skip_reason = self._skip_reason(db, entry, link, snapshot, approved_roles)
                    if skip_reason is not None:
                        result.skipped[entry_id] = skip_reason
                        logger.info(
                            "revalidation.skipped entry_id=%s chat_user_id=%s game_id=%s reason=%s",
                            entry_id,
                            chat_user_id,
                            game_id,
                            skip_reason,
                        )
                        continue
                    self._upgrade(db, entry, link, previous_confidence)
                    approved_roles.add(entry.role_name or "")
                    result.upgraded_entry_ids.append(entry.id)
                    batch.add_game_id(game_id)
                    batch.add_chat_user_id(chat_user_id)
        return result

    def _skip_reason(
        self,
        db: Session,
        entry: WhitelistEntry | None,
        link: IdentityLink | None,
        snapshot: MembershipSnapshot,
        approved_roles: set[str],
    ) -> str | None:
        if (
            entry is None
            or entry.approved
            or not entry.revoked
            or entry.block_reason != BLOCK_INSUFFICIENT_CONFIDENCE
        ):
            return SKIP_NO_LONGER_BLOCKED
        if link is None or entry.game_id != link.game_id or entry.chat_user_id != link.chat_user_id:
            return SKIP_GAME_ID_MISMATCH
        if not link.is_primary:
            return SKIP_LINK_NOT_PRIMARY
        tier = self.policy.tier_for_role(entry.role_name)
        if tier is None:
            return SKIP_ROLE_UNTRACKED
        if not snapshot.holds(entry.role_name):
            return SKIP_ROLE_NOT_HELD
        if not meets_threshold(link.confidence_score, self.policy.required_confidence(tier)):
            return SKIP_INSUFFICIENT_CONFIDENCE
        if entry.role_name in approved_roles or find_active_role_entry(
            db,
            chat_user_id=link.chat_user_id,
            role_name=entry.role_name or "",
        ):
            return SKIP_ACTIVE_ENTRY_EXISTS
        return None

    def _upgrade(
        self,
        db: Session,
        entry: WhitelistEntry,
        link: IdentityLink,
        previous_confidence: float,
    ) -> None:
        tier = self.policy.tier_for_role(entry.role_name) or entry.type
        before = snapshot_entry(entry)
        upgrade_metadata = {
            "upgraded_at": datetime.now(timezone.utc).isoformat(),
            "previous_confidence": previous_confidence,
            "new_confidence": link.confidence_score,
            "previous_revoked_reason": entry.revoked_reason,
            "link_id": link.id,
        }
        approve_entry(
            db,
            entry,
            game_id=link.game_id,
            entry_type=tier,
            metadata={"security_blocked": False, "security_upgrade": upgrade_metadata},
        )
        record_audit(
            db,
            action_type=ACTION_SECURITY_UPGRADE,
            target_type="whitelist_entry",
            target_id=link.game_id,
            description=(
                f"Role {entry.role_name} entry approved after confidence rose "
                f"from {previous_confidence:.2f} to {link.confidence_score:.2f}"
            ),
            before=before,
            after=snapshot_entry(entry),
            metadata={"role": entry.role_name, **upgrade_metadata},
        )
        logger.info(
            "revalidation.upgraded entry_id=%s chat_user_id=%s game_id=%s role=%s confidence=%.2f",
            entry.id,
            link.chat_user_id,
            link.game_id,
            entry.role_name,
            link.confidence_score,
        )
