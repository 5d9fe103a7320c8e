"""Access policy: identity format rules and role tiers."""

from rolesync.policy.game_identity import InvalidGameIdError, is_valid_game_id, validate_game_id
from rolesync.policy.role_tiers import (
    PRIVILEGE_TIER_VALUES,
    PrivilegeTier,
    RoleTierPolicy,
    meets_threshold,
    normalize_role_name,
)

__all__ = [
    "PRIVILEGE_TIER_VALUES",
    "InvalidGameIdError",
    "PrivilegeTier",
    "RoleTierPolicy",
    "is_valid_game_id",
    "meets_threshold",
    "normalize_role_name",
    "validate_game_id",
]
