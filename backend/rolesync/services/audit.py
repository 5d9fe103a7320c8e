"""Audit recorder for security-relevant mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from rolesync.models.audit_entry import AuditEntry
from rolesync.models.whitelist_entry import WhitelistEntry

AuditSeverity = Literal["info", "warning", "critical"]

SYSTEM_ACTOR_ID = "SYSTEM"
SECURITY_ACTOR_ID = "SECURITY_SYSTEM"

ACTION_ROLE_SYNC_GRANT = "ROLE_SYNC_GRANT"
ACTION_ROLE_SYNC_REAPPROVE = "ROLE_SYNC_REAPPROVE"
ACTION_ROLE_SYNC_REVOKE = "ROLE_SYNC_REVOKE"
ACTION_SECURITY_BLOCK = "SECURITY_BLOCK"
ACTION_UNLINKED_ROLE_PLACEHOLDER = "UNLINKED_ROLE_PLACEHOLDER"
ACTION_SECURITY_UPGRADE = "SECURITY_UPGRADE"
ACTION_CONFIDENCE_CHANGE = "confidence_change"
ACTION_CONFIDENCE_DECREASE = "CONFIDENCE_DECREASE"
ACTION_WHITELIST_AUTO_REVOKE = "WHITELIST_AUTO_REVOKE"
ACTION_WHITELIST_GRANT = "WHITELIST_GRANT"
ACTION_WHITELIST_EXTEND = "WHITELIST_EXTEND"
ACTION_WHITELIST_REVOKE = "WHITELIST_REVOKE"
ACTION_WHITELIST_REPAIR = "WHITELIST_REPAIR"


def record_audit(
    db: Session,
    *,
    action_type: str,
    target_type: str,
    target_id: str,
    description: str,
    actor_type: str = "system",
    actor_id: str = SYSTEM_ACTOR_ID,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    severity: AuditSeverity = "info",
    metadata: dict[str, Any] | None = None,
) -> AuditEntry:
    """Stage one audit row inside the caller's transaction."""

    entry = AuditEntry(
        action_type=action_type,
        actor_type=actor_type,
        actor_id=actor_id,
        target_type=target_type,
        target_id=target_id,
        description=description,
        before_json=before,
        after_json=after,
        severity=severity,
        metadata_json=dict(metadata or {}),
    )
    db.add(entry)
    db.flush()
    return entry


def list_audit_entries(
    db: Session,
    *,
    after_id: int | None = None,
    target_id: str | None = None,
    action_type: str | None = None,
    limit: int = 100,
) -> list[AuditEntry]:
    """Read the audit stream in commit order, resuming after a cursor id."""

    query = select(AuditEntry)
    if after_id is not None:
        query = query.where(AuditEntry.id > after_id)
    if target_id is not None:
        query = query.where(AuditEntry.target_id == target_id)
    if action_type is not None:
        query = query.where(AuditEntry.action_type == action_type)
    return list(db.scalars(query.order_by(AuditEntry.id.asc()).limit(limit)).all())


def snapshot_entry(entry: WhitelistEntry) -> dict[str, Any]:
    """JSON-safe before/after state of one ledger entry."""

    return {
        "id": entry.id,
        "game_id": entry.game_id,
        "chat_user_id": entry.chat_user_id,
        "type": entry.type,
        "source": entry.source,
        "role_name": entry.role_name,
        "duration_value": entry.duration_value,
        "duration_type": entry.duration_type,
        "granted_by": entry.granted_by,
        "granted_at": _iso(entry.granted_at),
        "approved": bool(entry.approved),
        "revoked": bool(entry.revoked),
        "revoked_by": entry.revoked_by,
        "revoked_at": _iso(entry.revoked_at),
        "revoked_reason": entry.revoked_reason,
        "block_reason": entry.block_reason,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
