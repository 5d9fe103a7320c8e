"""Tests for the identity link store and confidence auditing."""

from __future__ import annotations

import unittest

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rolesync.models.audit_entry import AuditEntry
from rolesync.models.base import Base
from rolesync.models.identity_link import IdentityLink
from rolesync.policy.game_identity import InvalidGameIdError
from rolesync.services.identity_links import (
    LinkValidationError,
    adjust_link_confidence,
    get_highest_confidence_link,
    get_primary_link,
    list_links_for_chat_user,
    record_unverified_link,
    upsert_verified_link,
)

CHAT_USER_ID = "509876543210987654"
OTHER_CHAT_USER_ID = "509876543210987655"
GAME_ID = "76561198012345678"
SECOND_GAME_ID = "76561198012345679"


class IdentityLinkStoreTests(unittest.TestCase):
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
        self.db.execute(delete(IdentityLink))
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_confidence_audit_only_on_strict_increase(self) -> None:
        created = record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="text-extracted")
        self.db.commit()
        self.assertTrue(created.created)
        self.assertEqual(created.link.confidence_score, 0.3)

        same = record_unverified_link(
            self.db,
            chat_user_id=CHAT_USER_ID,
            game_id=GAME_ID,
            source="text-extracted",
            confidence=0.3,
        )
        self.db.commit()
        self.assertFalse(same.confidence_increased)
        self.assertEqual(self._confidence_audits(), [])

        raised = record_unverified_link(
            self.db,
            chat_user_id=CHAT_USER_ID,
            game_id=GAME_ID,
            source="imported",
            confidence=0.7,
        )
        self.db.commit()

        self.assertTrue(raised.confidence_increased)
        audits = self._confidence_audits()
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0].metadata_json["old_confidence"], 0.3)
        self.assertEqual(audits[0].metadata_json["new_confidence"], 0.7)
        self.assertEqual(audits[0].metadata_json["existing_source"], "text-extracted")
        self.assertEqual(audits[0].metadata_json["new_source"], "imported")

    def test_unverified_link_never_lowers_confidence(self) -> None:
        record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="imported", confidence=0.7)
        self.db.commit()

        result = record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="text-extracted")
        self.db.commit()

        self.assertEqual(result.link.confidence_score, 0.7)
        self.assertEqual(result.link.source, "imported")
        self.assertEqual(self._confidence_audits(), [])

    def test_verified_link_is_created_primary_at_full_confidence(self) -> None:
        result = upsert_verified_link(self.db, chat_user_id=f" {CHAT_USER_ID} ", game_id=GAME_ID, source="self-verified")
        self.db.commit()

        self.assertTrue(result.created)
        self.assertTrue(result.became_primary)
        self.assertEqual(result.link.chat_user_id, CHAT_USER_ID)
        self.assertEqual(result.link.confidence_score, 1.0)
        self.assertTrue(result.link.is_primary)
        self.assertEqual(self._confidence_audits(), [])

    def test_verifying_existing_link_audits_the_increase(self) -> None:
        record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="text-extracted")
        self.db.commit()

        result = upsert_verified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="self-verified")
        self.db.commit()

        self.assertFalse(result.created)
        self.assertEqual(result.previous_confidence, 0.3)
        self.assertTrue(result.confidence_increased)
        audits = self._confidence_audits()
        self.assertEqual(len(audits), 1)
        self.assertEqual(audits[0].metadata_json["new_confidence"], 1.0)

    def test_verified_link_demotes_competing_primaries(self) -> None:
        record_unverified_link(self.db, chat_user_id=OTHER_CHAT_USER_ID, game_id=GAME_ID, source="imported")
        record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=SECOND_GAME_ID, source="imported")
        self.db.commit()

        result = upsert_verified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="admin-manual")
        self.db.commit()

        self.assertEqual(result.demoted_chat_user_ids, [OTHER_CHAT_USER_ID])
        self.assertIsNone(get_primary_link(self.db, OTHER_CHAT_USER_ID))
        self.assertEqual(get_primary_link(self.db, CHAT_USER_ID).game_id, GAME_ID)
        links = list_links_for_chat_user(self.db, CHAT_USER_ID)
        self.assertEqual([link.game_id for link in links], [GAME_ID, SECOND_GAME_ID])

    def test_unverified_link_does_not_take_over_existing_primary(self) -> None:
        upsert_verified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="self-verified")
        self.db.commit()

        result = record_unverified_link(self.db, chat_user_id=OTHER_CHAT_USER_ID, game_id=GAME_ID, source="imported")
        self.db.commit()

        self.assertTrue(result.created)
        self.assertFalse(result.link.is_primary)
        self.assertFalse(result.became_primary)

    def test_highest_confidence_link_prefers_score(self) -> None:
        record_unverified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="text-extracted")
        record_unverified_link(
            self.db,
            chat_user_id=CHAT_USER_ID,
            game_id=SECOND_GAME_ID,
            source="imported",
            confidence=0.8,
        )
        self.db.commit()

        best = get_highest_confidence_link(self.db, CHAT_USER_ID)

        self.assertEqual(best.game_id, SECOND_GAME_ID)
        self.assertIsNone(get_highest_confidence_link(self.db, OTHER_CHAT_USER_ID))

    def test_admin_decrease_requires_explicit_flag(self) -> None:
        link = record_unverified_link(
            self.db,
            chat_user_id=CHAT_USER_ID,
            game_id=GAME_ID,
            source="imported",
            confidence=0.7,
        ).link
        self.db.commit()

        with self.assertRaises(LinkValidationError):
            adjust_link_confidence(self.db, link.id, confidence=0.3, actor_id="admin-1", reason="mistake")
        result = adjust_link_confidence(
            self.db,
            link.id,
            confidence=0.3,
            actor_id="admin-1",
            reason="mistake",
            allow_decrease=True,
        )
        self.db.commit()

        self.assertEqual(result.link.confidence_score, 0.3)
        actions = list(self.db.scalars(select(AuditEntry.action_type)).all())
        self.assertEqual(actions, ["CONFIDENCE_DECREASE"])
        self.assertIsNone(adjust_link_confidence(self.db, 99999, confidence=1.0, actor_id="admin-1", reason="x"))

    def test_malformed_input_is_rejected(self) -> None:
        with self.assertRaises(InvalidGameIdError):
            upsert_verified_link(self.db, chat_user_id=CHAT_USER_ID, game_id="12345", source="self-verified")
        with self.assertRaises(LinkValidationError):
            upsert_verified_link(self.db, chat_user_id=CHAT_USER_ID, game_id=GAME_ID, source="imported")
        with self.assertRaises(LinkValidationError):
            record_unverified_link(self.db, chat_user_id="", game_id=GAME_ID, source="imported")
        with self.assertRaises(LinkValidationError):
            record_unverified_link(
                self.db,
                chat_user_id=CHAT_USER_ID,
                game_id=GAME_ID,
                source="imported",
                confidence=1.5,
            )

    def _confidence_audits(self) -> list[AuditEntry]:
        self.db.expire_all()
        return list(
            self.db.scalars(
                select(AuditEntry)
                .where(AuditEntry.action_type == "confidence_change")
                .order_by(AuditEntry.id.asc())
            ).all()
        )


if __name__ == "__main__":
    unittest.main()
