"""Identity link store: confidence-scored chat user to game id bindings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rolesync.config import get_settings
from rolesync.models.audit_entry import AuditEntry
from rolesync.models.identity_link import IdentityLink
from rolesync.policy.game_identity import validate_game_id
from rolesync.services.audit import (
    ACTION_CONFIDENCE_CHANGE,
    ACTION_CONFIDENCE_DECREASE,
    SYSTEM_ACTOR_ID,
    record_audit,
)

logger = logging.getLogger(__name__)

LinkSource = Literal["self-verified", "admin-manual", "text-extracted", "imported"]
LINK_SOURCE_VALUES: tuple[str, ...] = ("self-verified", "admin-manual", "text-extracted", "imported")
VERIFIED_LINK_SOURCES = frozenset({"self-verified", "admin-manual"})
UNVERIFIED_LINK_SOURCES = frozenset({"text-extracted", "imported"})
VERIFIED_CONFIDENCE = 1.0


class LinkValidationError(ValueError):
    """Raised for a malformed link request (bad source, chat user or confidence)."""


@dataclass(slots=True)
class LinkUpsertResult:
    """Outcome of writing a link, used to pick the downstream re-check."""

    link: IdentityLink
    created: bool
    previous_confidence: float | None = None
    previous_source: str | None = None
    demoted_chat_user_ids: list[str] = field(default_factory=list)
    became_primary: bool = False

    @property
    def confidence_increased(self) -> bool:
        return (
            not self.created
            and self.previous_confidence is not None
            and self.link.confidence_score > self.previous_confidence
        )

    @property
    def confidence_decreased(self) -> bool:
        return (
            not self.created
            and self.previous_confidence is not None
            and self.link.confidence_score < self.previous_confidence
        )


def normalize_confidence(value: float) -> float:
    """Validate and round to the stored two-decimal precision."""

    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise LinkValidationError(f"Invalid confidence score: {value!r}") from exc
    if not 0.0 <= numeric <= 1.0:
        raise LinkValidationError(f"Confidence score out of range: {value!r}")
    return round(numeric, 2)


def upsert_verified_link(
    db: Session,
    *,
    chat_user_id: str,
    game_id: str,
    source: str,
    actor_id: str = SYSTEM_ACTOR_ID,
    metadata: dict[str, Any] | None = None,
) -> LinkUpsertResult:
    """Write a fully trusted link and make it authoritative.

    Any other link for the same game id (held by another chat user) and any
    other link of this chat user is demoted to non-primary.
    """

    if source not in VERIFIED_LINK_SOURCES:
        raise LinkValidationError(f"Not a verified link source: {source!r}")
    clean_chat_user_id = _clean_chat_user_id(chat_user_id)
    clean_game_id = validate_game_id(game_id)

    existing = get_link(db, chat_user_id=clean_chat_user_id, game_id=clean_game_id)
    demoted = _demote_other_primaries(db, chat_user_id=clean_chat_user_id, game_id=clean_game_id)

    if existing is None:
        link = IdentityLink(
            chat_user_id=clean_chat_user_id,
            game_id=clean_game_id,
            confidence_score=VERIFIED_CONFIDENCE,
            source=source,
            is_primary=True,
            metadata_json=dict(metadata or {}),
        )
        db.add(link)
        db.flush()
        logger.info(
            "identity_link.created chat_user_id=%s game_id=%s source=%s confidence=%.2f",
            clean_chat_user_id,
            clean_game_id,
            source,
            VERIFIED_CONFIDENCE,
        )
        return LinkUpsertResult(link=link, created=True, demoted_chat_user_ids=demoted, became_primary=True)

    previous_confidence = existing.confidence_score
    previous_source = existing.source
    was_primary = existing.is_primary
    existing.confidence_score = VERIFIED_CONFIDENCE
    existing.source = source
    existing.is_primary = True
    if metadata:
        existing.metadata_json = {**(existing.metadata_json or {}), **metadata}
    db.flush()
    record_confidence_change(
        db,
        existing,
        old_confidence=previous_confidence,
        old_source=previous_source,
        actor_id=actor_id,
        reason=f"verified via {source}",
    )
    return LinkUpsertResult(
        link=existing,
        created=False,
        previous_confidence=previous_confidence,
        previous_source=previous_source,
        demoted_chat_user_ids=demoted,
        became_primary=not was_primary,
    )


def record_unverified_link(
    db: Session,
    *,
    chat_user_id: str,
    game_id: str,
    source: str,
    confidence: float | None = None,
    actor_id: str = SYSTEM_ACTOR_ID,
    metadata: dict[str, Any] | None = None,
) -> LinkUpsertResult:
    """Record a low-trust link (text-extracted or imported).

    Existing links are never lowered here. A new link only becomes primary when
    neither the chat user nor the game id already has an authoritative link.
    """

    if source not in UNVERIFIED_LINK_SOURCES:
        raise LinkValidationError(f"Not an unverified link source: {source!r}")
    clean_chat_user_id = _clean_chat_user_id(chat_user_id)
    clean_game_id = validate_game_id(game_id)
    settings = get_settings()
    default_confidence = (
        settings.text_extracted_confidence if source == "text-extracted" else settings.imported_confidence
    )
    requested = normalize_confidence(default_confidence if confidence is None else confidence)

    existing = get_link(db, chat_user_id=clean_chat_user_id, game_id=clean_game_id)
    if existing is None:
        becomes_primary = (
            get_primary_link(db, clean_chat_user_id) is None
            and get_primary_link_for_game(db, clean_game_id) is None
        )
        link = IdentityLink(
            chat_user_id=clean_chat_user_id,
            game_id=clean_game_id,
            confidence_score=requested,
            source=source,
            is_primary=becomes_primary,
            metadata_json=dict(metadata or {}),
        )
        db.add(link)
        db.flush()
        logger.info(
            "identity_link.created chat_user_id=%s game_id=%s source=%s confidence=%.2f primary=%s",
            clean_chat_user_id,
            clean_game_id,
            source,
            requested,
            becomes_primary,
        )
        return LinkUpsertResult(link=link, created=True, became_primary=becomes_primary)

    previous_confidence = existing.confidence_score
    previous_source = existing.source
    if requested > previous_confidence:
        existing.confidence_score = requested
        existing.source = source
        if metadata:
            existing.metadata_json = {**(existing.metadata_json or {}), **metadata}
        db.flush()
        record_confidence_change(
            db,
            existing,
            old_confidence=previous_confidence,
            old_source=previous_source,
            actor_id=actor_id,
            reason=f"re-observed via {source}",
        )
    return LinkUpsertResult(
        link=existing,
        created=False,
        previous_confidence=previous_confidence,
        previous_source=previous_source,
    )


def adjust_link_confidence(
    db: Session,
    link_id: int,
    *,
    confidence: float,
    actor_id: str,
    reason: str,
    allow_decrease: bool = False,
) -> LinkUpsertResult | None:
    """Explicit admin adjustment. Lowering requires allow_decrease=True."""

    link = db.scalar(select(IdentityLink).where(IdentityLink.id == link_id))
    if link is None:
        return None
    target = normalize_confidence(confidence)
    previous_confidence = link.confidence_score
    previous_source = link.source

    if target < previous_confidence:
        if not allow_decrease:
            raise LinkValidationError("Lowering link confidence requires an explicit admin decrease")
        link.confidence_score = target
        db.flush()
        record_audit(
            db,
            action_type=ACTION_CONFIDENCE_DECREASE,
            actor_type="admin",
            actor_id=actor_id,
            target_type="identity_link",
            target_id=link.game_id,
            description=f"Link confidence lowered from {previous_confidence:.2f} to {target:.2f}",
            before={"confidence": previous_confidence, "source": previous_source},
            after={"confidence": target, "source": link.source},
            severity="warning",
            metadata=_confidence_metadata(link, previous_confidence, previous_source, reason),
        )
        logger.warning(
            "identity_link.confidence_lowered link_id=%s old=%.2f new=%.2f actor_id=%s",
            link.id,
            previous_confidence,
            target,
            actor_id,
        )
    elif target > previous_confidence:
        link.confidence_score = target
        link.source = "admin-manual" if target >= VERIFIED_CONFIDENCE else link.source
        db.flush()
        record_confidence_change(
            db,
            link,
            old_confidence=previous_confidence,
            old_source=previous_source,
            actor_id=actor_id,
            actor_type="admin",
            reason=reason,
        )
    return LinkUpsertResult(
        link=link,
        created=False,
        previous_confidence=previous_confidence,
        previous_source=previous_source,
    )


def record_confidence_change(
    db: Session,
    link: IdentityLink,
    *,
    old_confidence: float,
    old_source: str,
    actor_id: str = SYSTEM_ACTOR_ID,
    actor_type: str = "system",
    reason: str = "",
) -> AuditEntry | None:
    """Audit a strict confidence increase on an existing link; silent otherwise."""

    new_confidence = link.confidence_score
    if round(new_confidence, 2) <= round(old_confidence, 2):
        return None
    logger.info(
        "identity_link.confidence_increased link_id=%s chat_user_id=%s game_id=%s old=%.2f new=%.2f",
        link.id,
        link.chat_user_id,
        link.game_id,
        old_confidence,
        new_confidence,
    )
    return record_audit(
        db,
        action_type=ACTION_CONFIDENCE_CHANGE,
        actor_type=actor_type,
        actor_id=actor_id,
        target_type="identity_link",
        target_id=link.game_id,
        description=(
            f"Link confidence raised from {old_confidence:.2f} to {new_confidence:.2f} "
            f"({old_source} -> {link.source})"
        ),
        before={"confidence": old_confidence, "source": old_source},
        after={"confidence": new_confidence, "source": link.source},
        metadata=_confidence_metadata(link, old_confidence, old_source, reason),
    )


def get_link(db: Session, *, chat_user_id: str, game_id: str) -> IdentityLink | None:
    return db.scalar(
        select(IdentityLink).where(
            IdentityLink.chat_user_id == chat_user_id,
            IdentityLink.game_id == game_id,
        )
    )


def get_highest_confidence_link(db: Session, chat_user_id: str) -> IdentityLink | None:
    """Most trusted link of a chat user; ties go to the primary, then the newest."""

    return db.scalar(
        select(IdentityLink)
        .where(IdentityLink.chat_user_id == chat_user_id)
        .order_by(
            IdentityLink.confidence_score.desc(),
            IdentityLink.is_primary.desc(),
            IdentityLink.id.desc(),
        )
        .limit(1)
    )


def get_primary_link(db: Session, chat_user_id: str) -> IdentityLink | None:
    """The one link authoritative for this chat user's privilege decisions."""

    return db.scalar(
        select(IdentityLink).where(
            IdentityLink.chat_user_id == chat_user_id,
            IdentityLink.is_primary.is_(True),
        )
    )


def get_primary_link_for_game(db: Session, game_id: str) -> IdentityLink | None:
    return db.scalar(
        select(IdentityLink)
        .where(
            IdentityLink.game_id == game_id,
            IdentityLink.is_primary.is_(True),
        )
        .order_by(IdentityLink.confidence_score.desc(), IdentityLink.id.desc())
        .limit(1)
    )


def list_links_for_chat_user(db: Session, chat_user_id: str) -> list[IdentityLink]:
    return list(
        db.scalars(
            select(IdentityLink)
            .where(IdentityLink.chat_user_id == chat_user_id)
            .order_by(IdentityLink.is_primary.desc(), IdentityLink.confidence_score.desc(), IdentityLink.id.asc())
        ).all()
    )


def _demote_other_primaries(db: Session, *, chat_user_id: str, game_id: str) -> list[str]:
    """Clear competing primaries; return other chat users who lost theirs."""

    competing = (
        IdentityLink.is_primary.is_(True),
        (IdentityLink.game_id == game_id) | (IdentityLink.chat_user_id == chat_user_id),
        ~((IdentityLink.game_id == game_id) & (IdentityLink.chat_user_id == chat_user_id)),
    )
    demoted = sorted(
        {
            other_chat_user_id
            for other_chat_user_id in db.scalars(select(IdentityLink.chat_user_id).where(*competing)).all()
            if other_chat_user_id != chat_user_id
        }
    )
    db.execute(
        update(IdentityLink)
        .where(*competing)
        .values(is_primary=False)
        .execution_options(synchronize_session="fetch")
    )
    if demoted:
        logger.info(
            "identity_link.primary_superseded game_id=%s new_chat_user_id=%s demoted=%s",
            game_id,
            chat_user_id,
            ",".join(demoted),
        )
    return demoted


def _clean_chat_user_id(chat_user_id: str | None) -> str:
    cleaned = (chat_user_id or "").strip()
    if not cleaned:
        raise LinkValidationError("chat_user_id is required")
    if len(cleaned) > 64:
        raise LinkValidationError("chat_user_id is too long")
    return cleaned


def _confidence_metadata(
    link: IdentityLink,
    old_confidence: float,
    old_source: str,
    reason: str,
) -> dict[str, Any]:
    return {
        "link_id": link.id,
        "chat_user_id": link.chat_user_id,
        "game_id": link.game_id,
        "old_confidence": old_confidence,
        "new_confidence": link.confidence_score,
        "existing_source": old_source,
        "new_source": link.source,
        "reason": reason,
    }
