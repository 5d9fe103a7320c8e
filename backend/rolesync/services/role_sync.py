"""Role-sync reconciler: turns role membership observations into ledger mutations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rolesync.config import get_settings
from rolesync.models.identity_link import IdentityLink
from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.policy.role_tiers import PrivilegeTier, RoleTierPolicy, meets_threshold, normalize_role_name
from rolesync.services.audit import (
    ACTION_ROLE_SYNC_GRANT,
    ACTION_ROLE_SYNC_REAPPROVE,
    ACTION_ROLE_SYNC_REVOKE,
    ACTION_SECURITY_BLOCK,
    ACTION_UNLINKED_ROLE_PLACEHOLDER,
    SECURITY_ACTOR_ID,
    SYSTEM_ACTOR_ID,
    record_audit,
    snapshot_entry,
)
from rolesync.services.cache import CacheInvalidationNotifier, InvalidationBatch
from rolesync.services.debounce import KeyedDebouncer
from rolesync.services.identity_links import get_primary_link
from rolesync.services.ledger import (
    BLOCK_INSUFFICIENT_CONFIDENCE,
    BLOCK_NO_LINKED_IDENTITY,
    approve_entry,
    create_entry,
    find_active_role_entry,
    list_active_role_entries,
    list_security_blocked_entries,
    revoke_entry,
)
from rolesync.services.membership import MembershipSource, lookup_current_roles
from rolesync.services.transactions import SessionFactory, reconciliation_pass

logger = logging.getLogger(__name__)

OUTCOME_GRANTED = "granted"
OUTCOME_REAPPROVED = "reapproved"
OUTCOME_ALREADY_CURRENT = "already_current"
OUTCOME_SECURITY_BLOCKED = "security_blocked"
OUTCOME_ALREADY_BLOCKED = "already_blocked"
OUTCOME_UNLINKED_PLACEHOLDER = "unlinked_placeholder"
OUTCOME_ALREADY_PLACEHOLDER = "already_placeholder"
OUTCOME_REVOKED = "revoked"
OUTCOME_NOTHING_TO_REVOKE = "nothing_to_revoke"
OUTCOME_UNTRACKED_ROLE = "untracked_role"
OUTCOME_DEBOUNCED = "debounced"

REASON_INSUFFICIENT_CONFIDENCE = "insufficient link confidence"
REASON_ROLE_REMOVED = "chat role removed - automatic revocation"
REASON_PRIMARY_CHANGED = "authoritative game identity changed"
REASON_LINK_SUPERSEDED = "linked game identity superseded"


class RoleObservationError(ValueError):
    """Raised when a role observation is missing its chat user or role."""


@dataclass(slots=True, frozen=True)
class RoleObservation:
    """One "user now has / lacks role X" event."""

    chat_user_id: str
    role: str
    added: bool


@dataclass(slots=True)
class RoleSyncResult:
    """What one reconciliation pass decided."""

    chat_user_id: str
    role: str
    added: bool
    outcome: str
    entry_id: int | None = None
    game_id: str | None = None


class RoleSyncReconciler:
    """Single entry point for role observations, serialized per chat user."""

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: CacheInvalidationNotifier,
        *,
        policy: RoleTierPolicy | None = None,
        membership_source: MembershipSource | None = None,
        debounce_seconds: float | None = None,
        lookup_timeout_seconds: float | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._notifier = notifier
        self.policy = policy or RoleTierPolicy.from_settings(settings)
        self._membership_source = membership_source
        self._lookup_timeout_seconds = (
            lookup_timeout_seconds
            if lookup_timeout_seconds is not None
            else settings.membership_lookup_timeout_seconds
        )
        self.debouncer = KeyedDebouncer(
            debounce_seconds if debounce_seconds is not None else settings.role_sync_debounce_seconds,
            clock=clock,
        )

    def handle_observation(self, observation: RoleObservation, *, bypass_debounce: bool = False) -> RoleSyncResult:
        """Reconcile one observation; duplicates within the window collapse into one pass."""

        chat_user_id, role = _validate_observation(observation)
        tier = self.policy.tier_for_role(role)
        if tier is None and observation.added:
            logger.debug("role_sync.untracked_role chat_user_id=%s role=%s", chat_user_id, role)
            return RoleSyncResult(chat_user_id, role, observation.added, OUTCOME_UNTRACKED_ROLE)

        with self.debouncer.serialize(chat_user_id) as slot:
            if not bypass_debounce and slot.is_duplicate(role, observation.added):
                batch = InvalidationBatch()
                batch.add_chat_user_id(chat_user_id)
                self._notifier.publish(batch)
                logger.info(
                    "role_sync.debounced chat_user_id=%s role=%s added=%s",
                    chat_user_id,
                    role,
                    observation.added,
                )
                return RoleSyncResult(chat_user_id, role, observation.added, OUTCOME_DEBOUNCED)

            result = self._reconcile_with_retry(chat_user_id, role, tier, observation.added)
            slot.mark_processed(role, observation.added)
        return result

    def sync_user_from_membership(self, chat_user_id: str) -> list[RoleSyncResult]:
        """Replay live membership as observations for a full per-user re-sync.

        Held tracked roles replay as "added"; active role entries whose role is
        no longer held (or whose user is gone) replay as "removed".
        """

        if self._membership_source is None:
            raise RuntimeError("RoleSyncReconciler has no membership source for re-sync")
        clean_chat_user_id = (chat_user_id or "").strip()
        if not clean_chat_user_id:
            raise RoleObservationError("chat_user_id is required")

        snapshot = lookup_current_roles(
            self._membership_source,
            clean_chat_user_id,
            timeout_seconds=self._lookup_timeout_seconds,
        )
        if snapshot is None:
            logger.warning("role_sync.resync_unconfirmed chat_user_id=%s", clean_chat_user_id)
            return []

        held_roles = sorted(role for role in snapshot.roles if snapshot.found and self.policy.is_tracked(role))
        db = self._session_factory()
        try:
            active_roles = {
                entry.role_name
                for entry in list_active_role_entries(db, clean_chat_user_id)
                if entry.role_name
            }
        finally:
            db.close()

        results = [
            self.handle_observation(RoleObservation(clean_chat_user_id, role, True), bypass_debounce=True)
            for role in held_roles
        ]
        results.extend(
            self.handle_observation(RoleObservation(clean_chat_user_id, role, False), bypass_debounce=True)
            for role in sorted(active_roles - set(held_roles))
        )
        logger.info(
            "role_sync.resynced chat_user_id=%s found=%s held=%d passes=%d",
            clean_chat_user_id,
            snapshot.found,
            len(held_roles),
            len(results),
        )
        return results

    def reevaluate_active_roles(self, chat_user_id: str) -> list[RoleSyncResult]:
        """Re-run policy for roles the ledger already tracks, without a membership lookup.

        Used when the user's authoritative link changed underneath them; an
        unbacked grant can only move towards blocked here, never towards approval
        of a role the ledger had not already seen.
        """

        db = self._session_factory()
        try:
            roles = sorted(
                {
                    entry.role_name
                    for entry in list_active_role_entries(db, chat_user_id)
                    if entry.role_name and self.policy.is_tracked(entry.role_name)
                }
            )
        finally:
            db.close()
        return [
            self.handle_observation(RoleObservation(chat_user_id, role, True), bypass_debounce=True)
            for role in roles
        ]

    def _reconcile_with_retry(
        self,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier | None,
        added: bool,
    ) -> RoleSyncResult:
        try:
            return self._reconcile(chat_user_id, role, tier, added)
        except IntegrityError:
            # Another process won the active-role index race; the retry sees its row.
            logger.warning("role_sync.conflict_retry chat_user_id=%s role=%s", chat_user_id, role)
            return self._reconcile(chat_user_id, role, tier, added)

    def _reconcile(
        self,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier | None,
        added: bool,
    ) -> RoleSyncResult:
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="role_sync",
            subject=chat_user_id,
        ) as (db, batch):
            batch.add_chat_user_id(chat_user_id)
            if added and tier is not None:
                return self._apply_role_added(db, batch, chat_user_id, role, tier)
            return self._apply_role_removed(db, batch, chat_user_id, role)

    def _apply_role_added(
        self,
        db: Session,
        batch: InvalidationBatch,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier,
    ) -> RoleSyncResult:
        link = get_primary_link(db, chat_user_id)
        active = find_active_role_entry(db, chat_user_id=chat_user_id, role_name=role)
        if active is not None:
            batch.add_game_id(active.game_id)

        if link is None:
            return self._place_unlinked(db, chat_user_id, role, tier, active)

        batch.add_game_id(link.game_id)
        required = self.policy.required_confidence(tier)
        if not meets_threshold(link.confidence_score, required):
            return self._block_for_confidence(db, chat_user_id, role, tier, link, required, active)
        return self._grant(db, chat_user_id, role, tier, link, active)

    def _place_unlinked(
        self,
        db: Session,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier,
        active: WhitelistEntry | None,
    ) -> RoleSyncResult:
        if active is not None and active.block_reason == BLOCK_NO_LINKED_IDENTITY:
            return RoleSyncResult(chat_user_id, role, True, OUTCOME_ALREADY_PLACEHOLDER, active.id, None)

        before = None
        if active is not None:
            # The grant's game id is no longer authoritatively linked to this user.
            before = snapshot_entry(active)
            revoke_entry(db, active, revoked_by=SYSTEM_ACTOR_ID, reason=REASON_LINK_SUPERSEDED)

        entry = create_entry(
            db,
            game_id=None,
            chat_user_id=chat_user_id,
            entry_type=tier,
            source="role",
            role_name=role,
            granted_by=SYSTEM_ACTOR_ID,
            approved=False,
            reason=f"Role {role} held without a linked game identity",
            block_reason=BLOCK_NO_LINKED_IDENTITY,
            metadata={"unlinked": True, "requires_game_link": True, "tier": tier},
        )
        record_audit(
            db,
            action_type=ACTION_UNLINKED_ROLE_PLACEHOLDER,
            target_type="chat_user",
            target_id=chat_user_id,
            description=f"Role {role} observed for a chat user with no linked game identity",
            before=before,
            after=snapshot_entry(entry),
            severity="warning",
            metadata={"role": role, "tier": tier},
        )
        logger.warning("role_sync.unlinked_placeholder chat_user_id=%s role=%s entry_id=%s", chat_user_id, role, entry.id)
        return RoleSyncResult(chat_user_id, role, True, OUTCOME_UNLINKED_PLACEHOLDER, entry.id, None)

    def _block_for_confidence(
        self,
        db: Session,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier,
        link: IdentityLink,
        required: float,
        active: WhitelistEntry | None,
    ) -> RoleSyncResult:
        block_metadata = {
            "security_blocked": True,
            "block_reason": BLOCK_INSUFFICIENT_CONFIDENCE,
            "actual_confidence": link.confidence_score,
            "required_confidence": required,
            "link_id": link.id,
            "link_source": link.source,
            "tier": tier,
        }
        before = snapshot_entry(active) if active is not None else None

        if active is None:
            existing = list_security_blocked_entries(
                db,
                game_id=link.game_id,
                chat_user_id=chat_user_id,
                role_name=role,
            )
            if existing:
                return RoleSyncResult(chat_user_id, role, True, OUTCOME_ALREADY_BLOCKED, existing[0].id, link.game_id)
            entry = create_entry(
                db,
                game_id=link.game_id,
                chat_user_id=chat_user_id,
                entry_type=tier,
                source="role",
                role_name=role,
                granted_by=SYSTEM_ACTOR_ID,
                approved=False,
                reason=f"Role sync: {role}",
                revoked=True,
                revoked_by=SECURITY_ACTOR_ID,
                revoked_reason=REASON_INSUFFICIENT_CONFIDENCE,
                block_reason=BLOCK_INSUFFICIENT_CONFIDENCE,
                metadata=block_metadata,
            )
        elif active.block_reason == BLOCK_NO_LINKED_IDENTITY:
            entry = active
            entry.game_id = link.game_id
            entry.block_reason = BLOCK_INSUFFICIENT_CONFIDENCE
            revoke_entry(
                db,
                entry,
                revoked_by=SECURITY_ACTOR_ID,
                reason=REASON_INSUFFICIENT_CONFIDENCE,
                metadata={**block_metadata, "unlinked": False},
            )
        else:
            # An approved grant no longer backed by enough trust is withdrawn and re-blocked.
            revoke_entry(db, active, revoked_by=SECURITY_ACTOR_ID, reason=REASON_INSUFFICIENT_CONFIDENCE)
            entry = create_entry(
                db,
                game_id=link.game_id,
                chat_user_id=chat_user_id,
                entry_type=tier,
                source="role",
                role_name=role,
                granted_by=SYSTEM_ACTOR_ID,
                approved=False,
                reason=f"Role sync: {role}",
                revoked=True,
                revoked_by=SECURITY_ACTOR_ID,
                revoked_reason=REASON_INSUFFICIENT_CONFIDENCE,
                block_reason=BLOCK_INSUFFICIENT_CONFIDENCE,
                metadata={**block_metadata, "replaces_entry_id": active.id},
            )

        record_audit(
            db,
            action_type=ACTION_SECURITY_BLOCK,
            actor_id=SECURITY_ACTOR_ID,
            target_type="whitelist_entry",
            target_id=link.game_id,
            description=(
                f"Role {role} blocked: link confidence {link.confidence_score:.2f} "
                f"below required {required:.2f}"
            ),
            before=before,
            after=snapshot_entry(entry),
            severity="warning",
            metadata=block_metadata,
        )
        logger.warning(
            "role_sync.security_block chat_user_id=%s role=%s game_id=%s confidence=%.2f required=%.2f",
            chat_user_id,
            role,
            link.game_id,
            link.confidence_score,
            required,
        )
        return RoleSyncResult(chat_user_id, role, True, OUTCOME_SECURITY_BLOCKED, entry.id, link.game_id)

    def _grant(
        self,
        db: Session,
        chat_user_id: str,
        role: str,
        tier: PrivilegeTier,
        link: IdentityLink,
        active: WhitelistEntry | None,
    ) -> RoleSyncResult:
        grant_metadata = {
            "link_id": link.id,
            "link_confidence": link.confidence_score,
            "link_source": link.source,
            "tier": tier,
        }
        if active is not None and active.approved and active.game_id == link.game_id and active.type == tier:
            return RoleSyncResult(chat_user_id, role, True, OUTCOME_ALREADY_CURRENT, active.id, link.game_id)

        reapprove: WhitelistEntry | None = None
        before = None
        if active is not None and not (active.approved and active.game_id != link.game_id):
            before = snapshot_entry(active)
            reapprove = active
        else:
            if active is not None:
                before = snapshot_entry(active)
                grant_metadata["replaces_entry_id"] = active.id
                revoke_entry(db, active, revoked_by=SYSTEM_ACTOR_ID, reason=REASON_PRIMARY_CHANGED)
            # A block left on the new game id is the same role's row; reuse it.
            blocked = list_security_blocked_entries(
                db,
                game_id=link.game_id,
                chat_user_id=chat_user_id,
                role_name=role,
            )
            if blocked:
                reapprove = blocked[0]
                before = snapshot_entry(reapprove)

        if reapprove is not None:
            approve_entry(
                db,
                reapprove,
                game_id=link.game_id,
                entry_type=tier,
                metadata={**grant_metadata, "security_blocked": False, "unlinked": False},
            )
            record_audit(
                db,
                action_type=ACTION_ROLE_SYNC_REAPPROVE,
                target_type="whitelist_entry",
                target_id=link.game_id,
                description=f"Role {role} entry re-approved for {link.game_id}",
                before=before,
                after=snapshot_entry(reapprove),
                metadata={"role": role, **grant_metadata},
            )
            logger.info(
                "role_sync.reapproved chat_user_id=%s role=%s game_id=%s entry_id=%s",
                chat_user_id,
                role,
                link.game_id,
                reapprove.id,
            )
            return RoleSyncResult(chat_user_id, role, True, OUTCOME_REAPPROVED, reapprove.id, link.game_id)

        entry = create_entry(
            db,
            game_id=link.game_id,
            chat_user_id=chat_user_id,
            entry_type=tier,
            source="role",
            role_name=role,
            granted_by=SYSTEM_ACTOR_ID,
            approved=True,
            reason=f"Role sync: {role}",
            metadata=grant_metadata,
        )
        record_audit(
            db,
            action_type=ACTION_ROLE_SYNC_GRANT,
            target_type="whitelist_entry",
            target_id=link.game_id,
            description=f"Role {role} granted {tier} whitelist to {link.game_id}",
            before=before,
            after=snapshot_entry(entry),
            metadata={"role": role, **grant_metadata},
        )
        logger.info(
            "role_sync.granted chat_user_id=%s role=%s game_id=%s entry_id=%s tier=%s",
            chat_user_id,
            role,
            link.game_id,
            entry.id,
            tier,
        )
        return RoleSyncResult(chat_user_id, role, True, OUTCOME_GRANTED, entry.id, link.game_id)

    def _apply_role_removed(
        self,
        db: Session,
        batch: InvalidationBatch,
        chat_user_id: str,
        role: str,
    ) -> RoleSyncResult:
        entries = [entry for entry in list_active_role_entries(db, chat_user_id) if entry.role_name == role]
        if not entries:
            return RoleSyncResult(chat_user_id, role, False, OUTCOME_NOTHING_TO_REVOKE)

        before = [snapshot_entry(entry) for entry in entries]
        for entry in entries:
            batch.add_game_id(entry.game_id)
            revoke_entry(
                db,
                entry,
                revoked_by=SYSTEM_ACTOR_ID,
                reason=REASON_ROLE_REMOVED,
                metadata={"auto_revoked": True},
            )
        first = entries[0]
        record_audit(
            db,
            action_type=ACTION_ROLE_SYNC_REVOKE,
            target_type="whitelist_entry",
            target_id=first.game_id or chat_user_id,
            description=f"Role {role} removed; revoked {len(entries)} role-sourced entr{'y' if len(entries) == 1 else 'ies'}",
            before={"entries": before},
            after={"entries": [snapshot_entry(entry) for entry in entries]},
            metadata={"role": role, "chat_user_id": chat_user_id, "revoked_entry_ids": [entry.id for entry in entries]},
        )
        logger.info(
            "role_sync.revoked chat_user_id=%s role=%s entries=%d",
            chat_user_id,
            role,
            len(entries),
        )
        return RoleSyncResult(chat_user_id, role, False, OUTCOME_REVOKED, first.id, first.game_id)


def _validate_observation(observation: RoleObservation) -> tuple[str, str]:
    chat_user_id = (observation.chat_user_id or "").strip()
    role = normalize_role_name(observation.role)
    if not chat_user_id:
        raise RoleObservationError("chat_user_id is required")
    if not role:
        raise RoleObservationError("role is required")
    return chat_user_id, role
