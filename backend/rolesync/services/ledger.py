"""Whitelist ledger: append-mostly grants and revocations per game id."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.policy.game_identity import validate_game_id
from rolesync.policy.role_tiers import PRIVILEGE_TIER_VALUES
from rolesync.services.stacking import DURATION_TYPE_VALUES, WhitelistStatus, calculate_whitelist_status

EntrySource = Literal["role", "manual", "donation", "import"]
ENTRY_SOURCE_VALUES: tuple[str, ...] = ("role", "manual", "donation", "import")

BLOCK_INSUFFICIENT_CONFIDENCE = "insufficient_confidence"
BLOCK_NO_LINKED_IDENTITY = "no_linked_identity"


class LedgerValidationError(ValueError):
    """Raised when a ledger write is malformed; nothing is persisted."""


def validate_duration(duration_value: int | None, duration_type: str | None) -> tuple[int | None, str | None]:
    """Both null (permanent) or a non-negative integer with a known unit."""

    if duration_value is None and duration_type is None:
        return None, None
    if duration_value is None or duration_type is None:
        raise LedgerValidationError("duration_value and duration_type must be set together")
    if isinstance(duration_value, bool) or not isinstance(duration_value, int):
        raise LedgerValidationError("duration_value must be an integer")
    if duration_value < 0:
        raise LedgerValidationError("duration_value must be non-negative")
    if duration_type not in DURATION_TYPE_VALUES:
        raise LedgerValidationError(f"Unsupported duration_type: {duration_type!r}")
    return duration_value, duration_type


def create_entry(
    db: Session,
    *,
    game_id: str | None,
    entry_type: str,
    source: str,
    granted_by: str,
    approved: bool,
    chat_user_id: str | None = None,
    role_name: str | None = None,
    duration_value: int | None = None,
    duration_type: str | None = None,
    reason: str | None = None,
    revoked: bool = False,
    revoked_by: str | None = None,
    revoked_reason: str | None = None,
    block_reason: str | None = None,
    granted_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> WhitelistEntry:
    """Validate and stage one ledger row."""

    if entry_type not in PRIVILEGE_TIER_VALUES:
        raise LedgerValidationError(f"Unsupported entry type: {entry_type!r}")
    if source not in ENTRY_SOURCE_VALUES:
        raise LedgerValidationError(f"Unsupported entry source: {source!r}")
    if game_id is None:
        if source != "role" or block_reason != BLOCK_NO_LINKED_IDENTITY:
            raise LedgerValidationError("game_id is required")
        clean_game_id = None
    else:
        clean_game_id = validate_game_id(game_id)
    if source == "role" and not (chat_user_id and role_name):
        raise LedgerValidationError("role entries need chat_user_id and role_name")
    clean_value, clean_type = validate_duration(duration_value, duration_type)

    now = datetime.now(timezone.utc)
    entry = WhitelistEntry(
        game_id=clean_game_id,
        chat_user_id=chat_user_id,
        type=entry_type,
        source=source,
        role_name=role_name,
        duration_value=clean_value,
        duration_type=clean_type,
        reason=reason,
        granted_by=granted_by,
        granted_at=granted_at or now,
        approved=approved,
        revoked=revoked,
        revoked_by=revoked_by if revoked else None,
        revoked_at=now if revoked else None,
        revoked_reason=revoked_reason if revoked else None,
        block_reason=block_reason,
        metadata_json=dict(metadata or {}),
    )
    db.add(entry)
    db.flush()
    return entry


def revoke_entry(
    db: Session,
    entry: WhitelistEntry,
    *,
    revoked_by: str,
    reason: str,
    metadata: dict[str, Any] | None = None,
) -> WhitelistEntry:
    entry.revoked = True
    entry.revoked_by = revoked_by
    entry.revoked_at = datetime.now(timezone.utc)
    entry.revoked_reason = reason
    if metadata:
        entry.metadata_json = {**(entry.metadata_json or {}), **metadata}
    db.flush()
    return entry


def approve_entry(
    db: Session,
    entry: WhitelistEntry,
    *,
    game_id: str,
    entry_type: str,
    metadata: dict[str, Any] | None = None,
) -> WhitelistEntry:
    """Approve (and un-revoke) a placeholder or blocked role entry in place."""

    entry.game_id = validate_game_id(game_id)
    entry.type = entry_type
    entry.approved = True
    entry.revoked = False
    entry.revoked_by = None
    entry.revoked_at = None
    entry.revoked_reason = None
    entry.block_reason = None
    if metadata:
        entry.metadata_json = {**(entry.metadata_json or {}), **metadata}
    db.flush()
    return entry


def get_entry(db: Session, entry_id: int) -> WhitelistEntry | None:
    return db.scalar(select(WhitelistEntry).where(WhitelistEntry.id == entry_id))


def find_active_role_entry(db: Session, *, chat_user_id: str, role_name: str) -> WhitelistEntry | None:
    """The single non-revoked role entry for (chat user, role), if any."""

    return db.scalar(
        select(WhitelistEntry).where(
            WhitelistEntry.chat_user_id == chat_user_id,
            WhitelistEntry.role_name == role_name,
            WhitelistEntry.source == "role",
            WhitelistEntry.revoked.is_(False),
        )
    )


def list_active_role_entries(db: Session, chat_user_id: str) -> list[WhitelistEntry]:
    return list(
        db.scalars(
            select(WhitelistEntry)
            .where(
                WhitelistEntry.chat_user_id == chat_user_id,
                WhitelistEntry.source == "role",
                WhitelistEntry.revoked.is_(False),
            )
            .order_by(WhitelistEntry.id.asc())
        ).all()
    )


def list_security_blocked_entries(
    db: Session,
    *,
    game_id: str,
    chat_user_id: str | None = None,
    role_name: str | None = None,
) -> list[WhitelistEntry]:
    """Unapproved, pre-revoked role entries held back for insufficient confidence."""

    query = select(WhitelistEntry).where(
        WhitelistEntry.game_id == game_id,
        WhitelistEntry.source == "role",
        WhitelistEntry.approved.is_(False),
        WhitelistEntry.revoked.is_(True),
        WhitelistEntry.block_reason == BLOCK_INSUFFICIENT_CONFIDENCE,
    )
    if chat_user_id is not None:
        query = query.where(WhitelistEntry.chat_user_id == chat_user_id)
    if role_name is not None:
        query = query.where(WhitelistEntry.role_name == role_name)
    return list(db.scalars(query.order_by(WhitelistEntry.id.desc())).all())


def list_unlinked_placeholders(db: Session, chat_user_id: str | None = None) -> list[WhitelistEntry]:
    """Open "no linked identity" placeholders awaiting operator attention."""

    query = select(WhitelistEntry).where(
        WhitelistEntry.block_reason == BLOCK_NO_LINKED_IDENTITY,
        WhitelistEntry.revoked.is_(False),
    )
    if chat_user_id is not None:
        query = query.where(WhitelistEntry.chat_user_id == chat_user_id)
    return list(db.scalars(query.order_by(WhitelistEntry.id.asc())).all())


def list_entries_for_game(db: Session, game_id: str, *, include_revoked: bool = True) -> list[WhitelistEntry]:
    query = select(WhitelistEntry).where(WhitelistEntry.game_id == game_id)
    if not include_revoked:
        query = query.where(WhitelistEntry.revoked.is_(False))
    return list(db.scalars(query.order_by(WhitelistEntry.granted_at.asc(), WhitelistEntry.id.asc())).all())


def get_whitelist_status(db: Session, game_id: str, *, now: datetime | None = None) -> WhitelistStatus:
    """Derived {status, expiration, entry_count} for one game id."""

    clean_game_id = validate_game_id(game_id)
    return calculate_whitelist_status(list_entries_for_game(db, clean_game_id), now=now)
