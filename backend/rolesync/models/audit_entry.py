"""Audit trail ORM model."""

from sqlalchemy import JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rolesync.models.base import Base, CreatedAtMixin, IdMixin


class AuditEntry(Base, IdMixin, CreatedAtMixin):
    """Immutable record of one security-relevant mutation."""

    __tablename__ = "audit_entries"

    action_type: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    before_json: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    after_json: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), default="info", nullable=False)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
