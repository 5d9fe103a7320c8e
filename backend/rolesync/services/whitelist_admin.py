"""Operator ledger actions: manual grants, extensions, revocations and repairs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select

from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.policy.game_identity import validate_game_id
from rolesync.schemas.whitelist import WhitelistEntryRead
from rolesync.services.audit import (
    ACTION_WHITELIST_EXTEND,
    ACTION_WHITELIST_GRANT,
    ACTION_WHITELIST_REPAIR,
    ACTION_WHITELIST_REVOKE,
    record_audit,
    snapshot_entry,
)
from rolesync.services.cache import CacheInvalidationNotifier
from rolesync.services.ledger import (
    LedgerValidationError,
    create_entry,
    get_entry,
    list_entries_for_game,
    revoke_entry,
    validate_duration,
)
from rolesync.services.transactions import SessionFactory, reconciliation_pass

logger = logging.getLogger(__name__)

OPERATOR_SOURCES = frozenset({"manual", "donation", "import"})


class WhitelistAdminService:
    """Each action is one transaction with one audit row and one invalidation."""

    def __init__(self, session_factory: SessionFactory, notifier: CacheInvalidationNotifier) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    def grant(
        self,
        *,
        game_id: str,
        granted_by: str,
        entry_type: str = "general",
        source: str = "manual",
        duration_value: int | None = None,
        duration_type: str | None = None,
        reason: str | None = None,
        chat_user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WhitelistEntryRead:
        if source not in OPERATOR_SOURCES:
            raise LedgerValidationError(f"Operators cannot grant {source!r} entries")
        clean_game_id = validate_game_id(game_id)
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="whitelist_admin.grant",
            subject=clean_game_id,
        ) as (db, batch):
            entry = create_entry(
                db,
                game_id=clean_game_id,
                chat_user_id=chat_user_id,
                entry_type=entry_type,
                source=source,
                granted_by=granted_by,
                approved=True,
                duration_value=duration_value,
                duration_type=duration_type,
                reason=reason,
                metadata=metadata,
            )
            record_audit(
                db,
                action_type=ACTION_WHITELIST_GRANT,
                actor_type="admin",
                actor_id=granted_by,
                target_type="whitelist_entry",
                target_id=clean_game_id,
                description=f"Granted {_describe_duration(entry)} {entry_type} whitelist ({source})",
                after=snapshot_entry(entry),
                metadata={"reason": reason, "source": source},
            )
            batch.add_game_id(clean_game_id)
            batch.add_chat_user_id(chat_user_id)
            payload = WhitelistEntryRead.model_validate(entry)
        logger.info("whitelist_admin.granted game_id=%s entry_id=%s source=%s", clean_game_id, payload.id, source)
        return payload

    def extend(
        self,
        *,
        game_id: str,
        duration_value: int,
        duration_type: str,
        granted_by: str,
        reason: str | None = None,
    ) -> WhitelistEntryRead:
        """Append a new stacked entry; existing entries are left as they are."""

        clean_game_id = validate_game_id(game_id)
        validate_duration(duration_value, duration_type)
        if duration_value <= 0:
            raise LedgerValidationError("extensions need a positive duration")
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="whitelist_admin.extend",
            subject=clean_game_id,
        ) as (db, batch):
            history = list_entries_for_game(db, clean_game_id)
            if not history:
                raise LedgerValidationError(f"No whitelist history for {clean_game_id}")
            latest = next((entry for entry in reversed(history) if entry.approved), history[-1])
            entry = create_entry(
                db,
                game_id=clean_game_id,
                chat_user_id=latest.chat_user_id,
                entry_type=latest.type,
                source="manual",
                granted_by=granted_by,
                approved=True,
                duration_value=duration_value,
                duration_type=duration_type,
                reason=reason or "Whitelist extension",
                metadata={"extension": True, "extends_entry_id": latest.id},
            )
            record_audit(
                db,
                action_type=ACTION_WHITELIST_EXTEND,
                actor_type="admin",
                actor_id=granted_by,
                target_type="whitelist_entry",
                target_id=clean_game_id,
                description=f"Extended whitelist by {duration_value} {duration_type}",
                after=snapshot_entry(entry),
                metadata={"reason": reason, "history_entries": len(history)},
            )
            batch.add_game_id(clean_game_id)
            payload = WhitelistEntryRead.model_validate(entry)
        logger.info(
            "whitelist_admin.extended game_id=%s entry_id=%s duration=%s%s",
            clean_game_id,
            payload.id,
            duration_value,
            duration_type,
        )
        return payload

    def revoke(self, *, game_id: str, revoked_by: str, reason: str) -> list[WhitelistEntryRead]:
        """Revoke approved non-role entries; role entries stay under role control."""

        clean_game_id = validate_game_id(game_id)
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="whitelist_admin.revoke",
            subject=clean_game_id,
        ) as (db, batch):
            entries = list(
                db.scalars(
                    select(WhitelistEntry)
                    .where(
                        WhitelistEntry.game_id == clean_game_id,
                        WhitelistEntry.approved.is_(True),
                        WhitelistEntry.revoked.is_(False),
                        WhitelistEntry.source != "role",
                    )
                    .order_by(WhitelistEntry.id.asc())
                ).all()
            )
            if not entries:
                return []
            before = [snapshot_entry(entry) for entry in entries]
            for entry in entries:
                revoke_entry(db, entry, revoked_by=revoked_by, reason=reason)
            record_audit(
                db,
                action_type=ACTION_WHITELIST_REVOKE,
                actor_type="admin",
                actor_id=revoked_by,
                target_type="whitelist_entry",
                target_id=clean_game_id,
                description=f"Revoked {len(entries)} operator-managed entr{'y' if len(entries) == 1 else 'ies'}",
                before={"entries": before},
                after={"entries": [snapshot_entry(entry) for entry in entries]},
                severity="warning",
                metadata={"reason": reason, "revoked_entry_ids": [entry.id for entry in entries]},
            )
            batch.add_game_id(clean_game_id)
            payload = [WhitelistEntryRead.model_validate(entry) for entry in entries]
        logger.info("whitelist_admin.revoked game_id=%s entries=%d", clean_game_id, len(payload))
        return payload

    def repair(
        self,
        entry_id: int,
        *,
        duration_value: int | None,
        duration_type: str | None,
        actor_id: str,
        reason: str,
        granted_at: datetime | None = None,
    ) -> WhitelistEntryRead | None:
        """The one path allowed to rewrite an entry's grant time or duration."""

        clean_value, clean_type = validate_duration(duration_value, duration_type)
        with reconciliation_pass(
            self._session_factory,
            self._notifier,
            operation="whitelist_admin.repair",
            subject=str(entry_id),
        ) as (db, batch):
            entry = get_entry(db, entry_id)
            if entry is None:
                return None
            before = snapshot_entry(entry)
            entry.duration_value = clean_value
            entry.duration_type = clean_type
            if granted_at is not None:
                entry.granted_at = granted_at
            db.flush()
            record_audit(
                db,
                action_type=ACTION_WHITELIST_REPAIR,
                actor_type="admin",
                actor_id=actor_id,
                target_type="whitelist_entry",
                target_id=entry.game_id or str(entry.id),
                description=f"Repaired entry {entry.id}: {reason}",
                before=before,
                after=snapshot_entry(entry),
                severity="warning",
                metadata={"reason": reason, "entry_id": entry.id},
            )
            batch.add_game_id(entry.game_id)
            batch.add_chat_user_id(entry.chat_user_id)
            payload = WhitelistEntryRead.model_validate(entry)
        logger.warning("whitelist_admin.repaired entry_id=%s actor_id=%s", entry_id, actor_id)
        return payload


def _describe_duration(entry: WhitelistEntry) -> str:
    if entry.is_permanent:
        return "permanent"
    return f"{entry.duration_value} {entry.duration_type}"
