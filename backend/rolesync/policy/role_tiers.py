"""Role to privilege-tier mapping and per-tier confidence thresholds."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from rolesync.config import Settings, get_settings

PrivilegeTier = Literal["staff", "general"]
PRIVILEGE_TIER_VALUES: tuple[str, ...] = ("staff", "general")


@dataclass(slots=True, frozen=True)
class RoleTierPolicy:
    """Which chat roles grant which tier, and how much link trust each tier needs."""

    staff_roles: frozenset[str] = field(default_factory=frozenset)
    general_roles: frozenset[str] = field(default_factory=frozenset)
    staff_required_confidence: float = 1.0
    general_required_confidence: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RoleTierPolicy:
        resolved = settings or get_settings()
        return cls(
            staff_roles=frozenset(normalize_role_name(role) for role in resolved.staff_roles),
            general_roles=frozenset(normalize_role_name(role) for role in resolved.general_roles),
            staff_required_confidence=resolved.staff_required_confidence,
            general_required_confidence=resolved.general_required_confidence,
        )

    def tier_for_role(self, role_name: str | None) -> PrivilegeTier | None:
        """Return the tier a role grants, or None for untracked roles."""

        normalized = normalize_role_name(role_name)
        if normalized in self.staff_roles:
            return "staff"
        if normalized in self.general_roles:
            return "general"
        return None

    def is_tracked(self, role_name: str | None) -> bool:
        return self.tier_for_role(role_name) is not None

    def required_confidence(self, tier: PrivilegeTier) -> float:
        if tier == "staff":
            return self.staff_required_confidence
        return self.general_required_confidence

    def tracked_roles(self) -> frozenset[str]:
        return self.staff_roles | self.general_roles


def normalize_role_name(raw_role: str | None) -> str:
    if not raw_role:
        return ""
    return " ".join(raw_role.strip().split())


def meets_threshold(confidence: float, required: float) -> bool:
    """Compare at the stored two-decimal precision."""

    return round(confidence, 2) >= round(required, 2)
