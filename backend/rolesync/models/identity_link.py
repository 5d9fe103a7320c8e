"""Identity link ORM model."""

from sqlalchemy import JSON, Boolean, Float, Index, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from rolesync.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin


class IdentityLink(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Confidence-scored binding from a chat user to one game identity."""

    __tablename__ = "identity_links"
    __table_args__ = (
        UniqueConstraint("chat_user_id", "game_id", name="uq_identity_links_chat_user_game"),
        Index(
            "uq_identity_links_primary_per_chat_user",
            "chat_user_id",
            unique=True,
            sqlite_where=text("is_primary"),
            postgresql_where=text("is_primary"),
        ),
    )

    chat_user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    game_id: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    metadata_json: Mapped[dict[str, object]] = mapped_column(JSON, default=dict, nullable=False)
