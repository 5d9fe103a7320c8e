"""End-to-end tests for link changes, feed consumption and runtime wiring."""

from __future__ import annotations

import unittest

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rolesync.config import Settings
from rolesync.models.audit_entry import AuditEntry
from rolesync.models.base import Base
from rolesync.models.identity_link import IdentityLink
from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.runtime import build_runtime
from rolesync.services.ledger import get_whitelist_status
from rolesync.services.membership import InMemoryMembershipSource
from rolesync.services.role_feed import MemberDeparture, consume_feed
from rolesync.services.role_sync import (
    OUTCOME_GRANTED,
    OUTCOME_REAPPROVED,
    OUTCOME_REVOKED,
    OUTCOME_SECURITY_BLOCKED,
    OUTCOME_UNLINKED_PLACEHOLDER,
    RoleObservation,
)

ALICE = "700000000000000001"
BOB = "700000000000000002"
CAROL = "700000000000000003"
GAME_ID = "76561198111111111"
SECOND_GAME_ID = "76561198111111112"
SETTINGS = Settings(staff_roles=["Moderator"], general_roles=["Member"])


class AccountLinkingServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def setUp(self) -> None:
        self.db = self.SessionLocal()
        self.db.execute(delete(AuditEntry))
        self.db.execute(delete(WhitelistEntry))
        self.db.execute(delete(IdentityLink))
        self.db.commit()
        self.membership = InMemoryMembershipSource()
        self.runtime = build_runtime(self.SessionLocal, membership_source=self.membership, settings=SETTINGS)

    def tearDown(self) -> None:
        self.db.close()

    def test_first_verified_link_resyncs_held_roles(self) -> None:
        self.membership.set_roles(ALICE, ["Moderator", "Booster"])

        outcome = self.runtime.linking.link_verified(chat_user_id=ALICE, game_id=GAME_ID, source="self-verified")

        self.assertTrue(outcome.created)
        self.assertEqual([result.outcome for result in outcome.role_sync_results], [OUTCOME_GRANTED])
        self.assertEqual(self._status(GAME_ID).status, "permanent")

    def test_confidence_upgrade_approves_blocked_staff_entry(self) -> None:
        self.membership.set_roles(ALICE, ["Moderator"])
        linked = self.runtime.linking.link_unverified(
            chat_user_id=ALICE,
            game_id=GAME_ID,
            source="imported",
            confidence=0.5,
        )
        self.assertEqual([result.outcome for result in linked.role_sync_results], [OUTCOME_SECURITY_BLOCKED])
        self.assertEqual(self._status(GAME_ID).status, "revoked")

        adjusted = self.runtime.linking.adjust_confidence(
            linked.link_id,
            confidence=1.0,
            actor_id="admin-1",
            reason="matched in-game",
        )

        self.assertTrue(adjusted.confidence_increased)
        self.assertEqual(len(adjusted.revalidation.upgraded_entry_ids), 1)
        self.assertEqual(self._status(GAME_ID).status, "permanent")
        actions = self._audit_actions()
        self.assertEqual(actions.count("confidence_change"), 1)
        self.assertEqual(actions.count("SECURITY_UPGRADE"), 1)

    def test_upgrade_without_live_role_stays_blocked(self) -> None:
        self.membership.set_roles(ALICE, ["Moderator"])
        linked = self.runtime.linking.link_unverified(
            chat_user_id=ALICE,
            game_id=GAME_ID,
            source="imported",
            confidence=0.5,
        )
        self.membership.set_roles(ALICE, [])

        adjusted = self.runtime.linking.adjust_confidence(
            linked.link_id,
            confidence=1.0,
            actor_id="admin-1",
            reason="matched in-game",
        )

        self.assertEqual(adjusted.revalidation.upgraded_entry_ids, [])
        self.assertEqual(self._status(GAME_ID).status, "revoked")
        self.assertNotIn("SECURITY_UPGRADE", self._audit_actions())

    def test_admin_decrease_reblocks_approved_staff_grant(self) -> None:
        self.membership.set_roles(ALICE, ["Moderator"])
        linked = self.runtime.linking.link_verified(chat_user_id=ALICE, game_id=GAME_ID, source="self-verified")
        self.assertEqual(self._status(GAME_ID).status, "permanent")

        adjusted = self.runtime.linking.adjust_confidence(
            linked.link_id,
            confidence=0.3,
            actor_id="admin-1",
            reason="shared account suspected",
            allow_decrease=True,
        )

        self.assertTrue(adjusted.confidence_decreased)
        self.assertEqual([result.outcome for result in adjusted.role_sync_results], [OUTCOME_SECURITY_BLOCKED])
        self.assertEqual(self._status(GAME_ID).status, "revoked")
        entries = self._entries()
        self.assertEqual(len(entries), 2)
        self.assertTrue(entries[0].revoked)
        self.assertFalse(entries[1].approved)
        self.assertEqual(entries[1].block_reason, "insufficient_confidence")
        actions = self._audit_actions()
        self.assertIn("CONFIDENCE_DECREASE", actions)
        self.assertIn("SECURITY_BLOCK", actions)

    def test_placeholder_is_upgraded_when_account_is_linked(self) -> None:
        self.membership.set_roles(BOB, ["Member"])
        placeholder = self.runtime.reconciler.handle_observation(RoleObservation(BOB, "Member", True))
        self.assertEqual(placeholder.outcome, OUTCOME_UNLINKED_PLACEHOLDER)

        outcome = self.runtime.linking.link_verified(chat_user_id=BOB, game_id=GAME_ID, source="admin-manual")

        self.assertEqual([result.outcome for result in outcome.role_sync_results], [OUTCOME_REAPPROVED])
        self.assertEqual(outcome.role_sync_results[0].entry_id, placeholder.entry_id)
        self.assertEqual(self._status(GAME_ID).entry_count, 1)

    def test_departed_member_placeholder_is_revoked_on_link(self) -> None:
        self.runtime.reconciler.handle_observation(RoleObservation(CAROL, "Member", True))

        outcome = self.runtime.linking.link_verified(chat_user_id=CAROL, game_id=GAME_ID, source="self-verified")

        self.assertEqual([result.outcome for result in outcome.role_sync_results], [OUTCOME_REVOKED])
        self.assertEqual(self._status(GAME_ID).status, "none")

    def test_demoted_user_loses_grant_on_superseded_game_id(self) -> None:
        self.membership.set_roles(ALICE, ["Member"])
        self.runtime.linking.link_verified(chat_user_id=ALICE, game_id=GAME_ID, source="self-verified")

        outcome = self.runtime.linking.link_verified(chat_user_id=BOB, game_id=GAME_ID, source="admin-manual")

        self.assertEqual(outcome.demoted_chat_user_ids, [ALICE])
        self.assertIn(OUTCOME_UNLINKED_PLACEHOLDER, [result.outcome for result in outcome.role_sync_results])
        alice_entries = [entry for entry in self._entries() if entry.chat_user_id == ALICE]
        self.assertEqual(len(alice_entries), 2)
        self.assertTrue(alice_entries[0].revoked)
        self.assertEqual(alice_entries[0].revoked_reason, "linked game identity superseded")
        self.assertIsNone(alice_entries[1].game_id)
        self.assertEqual(self._status(GAME_ID).status, "revoked")

    def test_link_invalidates_cached_status(self) -> None:
        self.membership.set_roles(ALICE, ["Member"])
        cache = self.runtime.status_cache
        cache.get_or_load(GAME_ID, lambda: self._status(GAME_ID))
        self.assertEqual(cache.peek(GAME_ID).status, "none")

        self.runtime.linking.link_verified(chat_user_id=ALICE, game_id=GAME_ID, source="self-verified")

        self.assertIsNone(cache.peek(GAME_ID))

    def test_unconfigured_membership_source_skips_resync(self) -> None:
        runtime = build_runtime(self.SessionLocal, settings=SETTINGS)

        outcome = runtime.linking.link_verified(chat_user_id=ALICE, game_id=SECOND_GAME_ID, source="self-verified")

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.role_sync_results, [])
        self.assertEqual(self._entries(), [])

    def test_consume_feed_counts_outcomes(self) -> None:
        self.runtime.linking.link_verified(chat_user_id=ALICE, game_id=GAME_ID, source="self-verified")
        events = [
            RoleObservation(ALICE, "Member", True),
            RoleObservation(ALICE, "Member", True),
            RoleObservation(BOB, "  ", True),
            MemberDeparture(CAROL),
        ]

        summary = consume_feed(
            events,
            reconciler=self.runtime.reconciler,
            departures=self.runtime.departures,
        )

        self.assertEqual(summary.processed, 2)
        self.assertEqual(summary.debounced, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(len([entry for entry in self._entries() if entry.approved]), 1)

    def _status(self, game_id: str):
        self.db.expire_all()
        return get_whitelist_status(self.db, game_id)

    def _entries(self) -> list[WhitelistEntry]:
        self.db.expire_all()
        return list(self.db.scalars(select(WhitelistEntry).order_by(WhitelistEntry.id.asc())).all())

    def _audit_actions(self) -> list[str]:
        self.db.expire_all()
        return list(self.db.scalars(select(AuditEntry.action_type).order_by(AuditEntry.id.asc())).all())


if __name__ == "__main__":
    unittest.main()
