"""Whitelist ledger entry ORM model."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from rolesync.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class WhitelistEntry(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """One grant or extension event for a game identity."""

    __tablename__ = "whitelist_entries"
    __table_args__ = (
        Index(
            "uq_whitelist_entries_active_role",
            "chat_user_id",
            "role_name",
            unique=True,
            sqlite_where=text("source = 'role' AND NOT revoked"),
            postgresql_where=text("source = 'role' AND NOT revoked"),
        ),
    )

    game_id: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)
    chat_user_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    role_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    block_reason: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)

    @property
    def is_permanent(self) -> bool:
        return self.duration_value is None or self.duration_type is None
