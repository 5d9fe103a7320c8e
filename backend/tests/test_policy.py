"""Tests for game id validation and role tier policy."""

from __future__ import annotations

import unittest

from rolesync.config import Settings
from rolesync.policy.game_identity import InvalidGameIdError, is_valid_game_id, validate_game_id
from rolesync.policy.role_tiers import RoleTierPolicy, meets_threshold, normalize_role_name


class GameIdentityTests(unittest.TestCase):
    def test_accepts_well_formed_ids(self) -> None:
        self.assertTrue(is_valid_game_id("76561198000000001"))
        self.assertTrue(is_valid_game_id("76561197960287930"))
        self.assertEqual(validate_game_id("  76561199000000002 "), "76561199000000002")

    def test_rejects_malformed_ids(self) -> None:
        for value in ("7656119800000000", "765611980000000011", "12345678901234567", "7656119800000000x", None):
            with self.subTest(value=value):
                self.assertFalse(is_valid_game_id(value))
        with self.assertRaises(InvalidGameIdError):
            validate_game_id("not-a-game-id")

    def test_custom_prefixes(self) -> None:
        self.assertTrue(is_valid_game_id("12345678901234567", prefixes=["1234"]))
        self.assertFalse(is_valid_game_id("76561198000000001", prefixes=["1234"]))


class RoleTierPolicyTests(unittest.TestCase):
    def test_from_settings_maps_roles_to_tiers(self) -> None:
        policy = RoleTierPolicy.from_settings(
            Settings(
                staff_roles=["Head  Admin", "Moderator"],
                general_roles=["Member"],
                staff_required_confidence=0.9,
                general_required_confidence=0.4,
            )
        )

        self.assertEqual(policy.tier_for_role(" Head Admin "), "staff")
        self.assertEqual(policy.tier_for_role("Member"), "general")
        self.assertIsNone(policy.tier_for_role("Booster"))
        self.assertEqual(policy.required_confidence("staff"), 0.9)
        self.assertEqual(policy.required_confidence("general"), 0.4)
        self.assertEqual(policy.tracked_roles(), frozenset({"Head Admin", "Moderator", "Member"}))

    def test_threshold_compares_at_two_decimals(self) -> None:
        self.assertTrue(meets_threshold(0.999, 1.0))
        self.assertFalse(meets_threshold(0.5, 1.0))
        self.assertTrue(meets_threshold(0.5, 0.5))

    def test_normalize_role_name(self) -> None:
        self.assertEqual(normalize_role_name("  Squad   Admin "), "Squad Admin")
        self.assertEqual(normalize_role_name(None), "")

    def test_settings_clamp_debounce_window(self) -> None:
        self.assertEqual(Settings(role_sync_debounce_seconds=1).role_sync_debounce_seconds, 5.0)
        self.assertEqual(Settings(role_sync_debounce_seconds=30).role_sync_debounce_seconds, 10.0)
        self.assertEqual(Settings(role_sync_debounce_seconds=7).role_sync_debounce_seconds, 7.0)

    def test_settings_reject_out_of_range_confidence(self) -> None:
        with self.assertRaises(ValueError):
            Settings(staff_required_confidence=1.5)


if __name__ == "__main__":
    unittest.main()
