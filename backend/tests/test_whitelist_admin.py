"""Tests for operator ledger actions and derived status."""

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rolesync.models.audit_entry import AuditEntry
from rolesync.models.base import Base
from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.policy.game_identity import InvalidGameIdError
from rolesync.services.audit import list_audit_entries
from rolesync.services.cache import CacheInvalidationNotifier, InvalidationSignal
from rolesync.services.ledger import LedgerValidationError, create_entry, get_whitelist_status
from rolesync.services.whitelist_admin import WhitelistAdminService

GAME_ID = "76561198099999991"


class _RecordingSink:
    def __init__(self) -> None:
        self.signals: list[InvalidationSignal] = []

    def invalidate(self, signal: InvalidationSignal) -> None:
        self.signals.append(signal)


class WhitelistAdminServiceTests(unittest.TestCase):
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
        self.db.commit()
        self.sink = _RecordingSink()
        notifier = CacheInvalidationNotifier()
        notifier.subscribe(self.sink)
        self.admin = WhitelistAdminService(self.SessionLocal, notifier)

    def tearDown(self) -> None:
        self.db.close()

    def test_grants_stack_from_earliest_anchor(self) -> None:
        anchor = datetime.now(timezone.utc) - timedelta(days=1)
        create_entry(
            self.db,
            game_id=GAME_ID,
            entry_type="general",
            source="donation",
            granted_by="admin-1",
            approved=True,
            duration_value=10,
            duration_type="days",
            granted_at=anchor,
        )
        self.db.commit()

        self.admin.grant(game_id=GAME_ID, granted_by="admin-1", duration_value=5, duration_type="days")

        status = self._status()
        self.assertEqual(status.status, "active")
        self.assertEqual(status.entry_count, 2)
        self.assertEqual(status.expiration, anchor + timedelta(days=15))
        self.assertEqual(len(self.sink.signals), 1)
        self.assertEqual(self.sink.signals[0].game_ids, (GAME_ID,))

    def test_permanent_grant_dominates(self) -> None:
        self.admin.grant(game_id=GAME_ID, granted_by="admin-1", duration_value=30, duration_type="days")
        payload = self.admin.grant(game_id=GAME_ID, granted_by="admin-1", entry_type="staff")

        self.assertIsNone(payload.duration_value)
        status = self._status()
        self.assertEqual(status.status, "permanent")
        self.assertIsNone(status.expiration)

    def test_grant_rejects_role_source_and_bad_input(self) -> None:
        with self.assertRaises(LedgerValidationError):
            self.admin.grant(game_id=GAME_ID, granted_by="admin-1", source="role")
        with self.assertRaises(InvalidGameIdError):
            self.admin.grant(game_id="123", granted_by="admin-1")
        with self.assertRaises(LedgerValidationError):
            self.admin.grant(game_id=GAME_ID, granted_by="admin-1", duration_value=5, duration_type="weeks")
        self.assertEqual(self.sink.signals, [])

    def test_extend_appends_entry_and_requires_history(self) -> None:
        with self.assertRaises(LedgerValidationError):
            self.admin.extend(game_id=GAME_ID, duration_value=1, duration_type="months", granted_by="admin-1")

        self.admin.grant(
            game_id=GAME_ID,
            granted_by="admin-1",
            entry_type="staff",
            duration_value=1,
            duration_type="months",
            chat_user_id="600000000000000001",
        )
        extension = self.admin.extend(game_id=GAME_ID, duration_value=2, duration_type="months", granted_by="admin-2")

        self.assertEqual(extension.type, "staff")
        self.assertEqual(extension.chat_user_id, "600000000000000001")
        self.assertTrue(extension.metadata_json["extension"])
        self.assertEqual(self._status().entry_count, 2)
        actions = [audit.action_type for audit in list_audit_entries(self.db, target_id=GAME_ID)]
        self.assertEqual(actions, ["WHITELIST_GRANT", "WHITELIST_EXTEND"])

    def test_revoke_leaves_role_entries_alone(self) -> None:
        self.admin.grant(game_id=GAME_ID, granted_by="admin-1", source="donation", duration_value=3, duration_type="months")
        create_entry(
            self.db,
            game_id=GAME_ID,
            chat_user_id="600000000000000002",
            entry_type="general",
            source="role",
            role_name="Member",
            granted_by="SYSTEM",
            approved=True,
        )
        self.db.commit()

        revoked = self.admin.revoke(game_id=GAME_ID, revoked_by="admin-1", reason="chargeback")

        self.assertEqual(len(revoked), 1)
        self.assertEqual(revoked[0].source, "donation")
        self.assertTrue(revoked[0].revoked)
        self.assertEqual(self._status().status, "permanent")
        self.assertEqual(len(list_audit_entries(self.db, action_type="WHITELIST_REVOKE")), 1)
        self.assertEqual(self.admin.revoke(game_id=GAME_ID, revoked_by="admin-1", reason="again"), [])

    def test_repair_rewrites_duration_with_audit(self) -> None:
        entry = self.admin.grant(game_id=GAME_ID, granted_by="admin-1", duration_value=0, duration_type="days")
        self.assertEqual(self._status().status, "expired")

        repaired = self.admin.repair(
            entry.id,
            duration_value=12,
            duration_type="hours",
            actor_id="admin-3",
            reason="typo in grant",
        )

        self.assertEqual(repaired.duration_value, 12)
        self.assertEqual(repaired.duration_type, "hours")
        self.assertEqual(self._status().status, "active")
        audits = list_audit_entries(self.db, action_type="WHITELIST_REPAIR")
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0].before_json["duration_value"], 0)
        self.assertIsNone(
            self.admin.repair(9999, duration_value=1, duration_type="days", actor_id="admin-3", reason="missing")
        )

    def _status(self):
        self.db.expire_all()
        return get_whitelist_status(self.db, GAME_ID)


if __name__ == "__main__":
    unittest.main()
