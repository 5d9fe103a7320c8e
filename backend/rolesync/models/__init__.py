"""ORM models package exports."""

from rolesync.models.audit_entry import AuditEntry
from rolesync.models.identity_link import IdentityLink
from rolesync.models.whitelist_entry import WhitelistEntry

__all__ = [
    "AuditEntry",
    "IdentityLink",
    "WhitelistEntry",
]
