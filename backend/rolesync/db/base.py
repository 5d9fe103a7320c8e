"""SQLAlchemy metadata registry import for Alembic."""

from rolesync.models import AuditEntry, IdentityLink, WhitelistEntry
from rolesync.models.base import Base

__all__ = ["Base", "AuditEntry", "IdentityLink", "WhitelistEntry"]
