"""Departure reconciler: a member leaving drops role-sourced access only."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from rolesync.config import get_settings
from rolesync.services.audit import ACTION_WHITELIST_AUTO_REVOKE, SYSTEM_ACTOR_ID, record_audit, snapshot_entry
from rolesync.services.cache import CacheInvalidationNotifier
from rolesync.services.debounce import KeyedDebouncer
from rolesync.services.ledger import list_active_role_entries, revoke_entry
from rolesync.services.role_sync import RoleObservationError
from rolesync.services.transactions import SessionFactory, reconciliation_pass

logger = logging.getLogger(__name__)

REASON_LEFT_COMMUNITY = "Left community - role-based access removed"


@dataclass(slots=True)
class DepartureResult:
    chat_user_id: str
    revoked_entry_ids: list[int] = field(default_factory=list)
    game_ids: list[str] = field(default_factory=list)
    audit_id: int | None = None


class DepartureReconciler:
    """Revoke every non-revoked role entry of a departed chat user."""

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: CacheInvalidationNotifier,
        *,
        debouncer: KeyedDebouncer | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._debouncer = debouncer or KeyedDebouncer(get_settings().role_sync_debounce_seconds)

    def handle_departure(self, chat_user_id: str, *, metadata: dict[str, Any] | None = None) -> DepartureResult:
        clean_chat_user_id = (chat_user_id or "").strip()
        if not clean_chat_user_id:
            raise RoleObservationError("chat_user_id is required")

        result = DepartureResult(chat_user_id=clean_chat_user_id)
        with self._debouncer.serialize(clean_chat_user_id) as slot:
            with reconciliation_pass(
                self._session_factory,
                self._notifier,
                operation="departure",
                subject=clean_chat_user_id,
            ) as (db, batch):
                batch.add_chat_user_id(clean_chat_user_id)
                entries = list_active_role_entries(db, clean_chat_user_id)
                if entries:
                    before = [snapshot_entry(entry) for entry in entries]
                    for entry in entries:
                        revoke_entry(
                            db,
                            entry,
                            revoked_by=SYSTEM_ACTOR_ID,
                            reason=REASON_LEFT_COMMUNITY,
                            metadata={"auto_revoked_on_departure": True},
                        )
                        batch.add_game_id(entry.game_id)
                        result.revoked_entry_ids.append(entry.id)
                    result.game_ids = list(batch.game_ids)
                    audit = record_audit(
                        db,
                        action_type=ACTION_WHITELIST_AUTO_REVOKE,
                        target_type="chat_user",
                        target_id=clean_chat_user_id,
                        description=(
                            f"Member left; revoked {len(entries)} role-sourced "
                            f"entr{'y' if len(entries) == 1 else 'ies'}"
                        ),
                        before={"entries": before},
                        after={"entries": [snapshot_entry(entry) for entry in entries]},
                        severity="warning",
                        metadata={
                            **(metadata or {}),
                            "revoked_count": len(entries),
                            "revoked_entry_ids": list(result.revoked_entry_ids),
                            "game_ids": list(result.game_ids),
                        },
                    )
                    result.audit_id = audit.id
            # A rejoin must not be mistaken for a duplicate of pre-departure events.
            slot.forget()

        logger.info(
            "departure.reconciled chat_user_id=%s revoked=%d game_ids=%s",
            clean_chat_user_id,
            len(result.revoked_entry_ids),
            ",".join(result.game_ids),
        )
        return result
