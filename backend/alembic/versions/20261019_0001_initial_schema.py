"""initial schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "identity_links",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chat_user_id", sa.String(length=64), nullable=False),
        sa.Column("game_id", sa.String(length=32), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chat_user_id", "game_id", name="uq_identity_links_chat_user_game"),
    )
    op.create_index("ix_identity_links_chat_user_id", "identity_links", ["chat_user_id"], unique=False)
    op.create_index("ix_identity_links_game_id", "identity_links", ["game_id"], unique=False)
    op.create_index(
        "uq_identity_links_primary_per_chat_user",
        "identity_links",
        ["chat_user_id"],
        unique=True,
        sqlite_where=sa.text("is_primary"),
        postgresql_where=sa.text("is_primary"),
    )

    op.create_table(
        "whitelist_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("game_id", sa.String(length=32), nullable=True),
        sa.Column("chat_user_id", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("role_name", sa.String(length=64), nullable=True),
        sa.Column("duration_value", sa.Integer(), nullable=True),
        sa.Column("duration_type", sa.String(length=16), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("granted_by", sa.String(length=64), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved", sa.Boolean(), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False),
        sa.Column("revoked_by", sa.String(length=64), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.Text(), nullable=True),
        sa.Column("block_reason", sa.String(length=32), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_whitelist_entries_game_id", "whitelist_entries", ["game_id"], unique=False)
    op.create_index("ix_whitelist_entries_chat_user_id", "whitelist_entries", ["chat_user_id"], unique=False)
    op.create_index("ix_whitelist_entries_source", "whitelist_entries", ["source"], unique=False)
    op.create_index("ix_whitelist_entries_block_reason", "whitelist_entries", ["block_reason"], unique=False)
    op.create_index(
        "uq_whitelist_entries_active_role",
        "whitelist_entries",
        ["chat_user_id", "role_name"],
        unique=True,
        sqlite_where=sa.text("source = 'role' AND NOT revoked"),
        postgresql_where=sa.text("source = 'role' AND NOT revoked"),
    )

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("target_type", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_entries_action_type", "audit_entries", ["action_type"], unique=False)
    op.create_index("ix_audit_entries_target_id", "audit_entries", ["target_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_entries_target_id", table_name="audit_entries")
    op.drop_index("ix_audit_entries_action_type", table_name="audit_entries")
    op.drop_table("audit_entries")

    op.drop_index("uq_whitelist_entries_active_role", table_name="whitelist_entries")
    op.drop_index("ix_whitelist_entries_block_reason", table_name="whitelist_entries")
    op.drop_index("ix_whitelist_entries_source", table_name="whitelist_entries")
    op.drop_index("ix_whitelist_entries_chat_user_id", table_name="whitelist_entries")
    op.drop_index("ix_whitelist_entries_game_id", table_name="whitelist_entries")
    op.drop_table("whitelist_entries")

    op.drop_index("uq_identity_links_primary_per_chat_user", table_name="identity_links")
    op.drop_index("ix_identity_links_game_id", table_name="identity_links")
    op.drop_index("ix_identity_links_chat_user_id", table_name="identity_links")
    op.drop_table("identity_links")
