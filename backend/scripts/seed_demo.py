"""Seed a demo community: linked staff, a security-blocked moderator and a donor.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import delete, or_

# Make `rolesync` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from rolesync.db.session import SessionLocal
from rolesync.models.audit_entry import AuditEntry
from rolesync.models.identity_link import IdentityLink
from rolesync.models.whitelist_entry import WhitelistEntry
from rolesync.runtime import build_runtime
from rolesync.services.ledger import get_whitelist_status
from rolesync.services.membership import InMemoryMembershipSource
from rolesync.services.role_sync import RoleObservation

# (chat user id, game id, link source, confidence, held roles)
DEMO_MEMBERS = [
    ("900000000000000001", "76561198900000001", "self-verified", None, ["HeadAdmin"]),
    ("900000000000000002", "76561198900000002", "imported", 0.5, ["Moderator"]),
    ("900000000000000003", "76561198900000003", "text-extracted", None, ["Member"]),
]
DONOR_GAME_ID = "76561198900000004"
UNLINKED_CHAT_USER_ID = "900000000000000005"


def reset_demo(db) -> None:
    """Remove existing records for the demo identities."""

    chat_user_ids = [member[0] for member in DEMO_MEMBERS] + [UNLINKED_CHAT_USER_ID]
    game_ids = [member[1] for member in DEMO_MEMBERS] + [DONOR_GAME_ID]
    db.execute(
        delete(WhitelistEntry).where(
            or_(WhitelistEntry.chat_user_id.in_(chat_user_ids), WhitelistEntry.game_id.in_(game_ids))
        )
    )
    db.execute(delete(IdentityLink).where(IdentityLink.chat_user_id.in_(chat_user_ids)))
    db.execute(delete(AuditEntry).where(AuditEntry.target_id.in_(chat_user_ids + game_ids)))
    db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed demo identity links, role grants and donations.")
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not delete existing records for the demo identities before seeding.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data and print a short summary."""

    args = parse_args()
    if not args.no_reset:
        with SessionLocal() as db:
            reset_demo(db)

    membership = InMemoryMembershipSource({member[0]: member[4] for member in DEMO_MEMBERS})
    membership.set_roles(UNLINKED_CHAT_USER_ID, ["Member"])
    runtime = build_runtime(SessionLocal, membership_source=membership)

    for chat_user_id, game_id, source, confidence, _ in DEMO_MEMBERS:
        if source == "self-verified":
            outcome = runtime.linking.link_verified(chat_user_id=chat_user_id, game_id=game_id, source=source)
        else:
            outcome = runtime.linking.link_unverified(
                chat_user_id=chat_user_id,
                game_id=game_id,
                source=source,
                confidence=confidence,
            )
        for result in outcome.role_sync_results:
            print(f"{chat_user_id} {result.role}: {result.outcome}")

    placeholder = runtime.reconciler.handle_observation(RoleObservation(UNLINKED_CHAT_USER_ID, "Member", True))
    print(f"{UNLINKED_CHAT_USER_ID} Member: {placeholder.outcome}")

    runtime.admin.grant(
        game_id=DONOR_GAME_ID,
        granted_by="demo-admin",
        source="donation",
        duration_value=30,
        duration_type="days",
        reason="Demo donation",
    )
    runtime.admin.extend(game_id=DONOR_GAME_ID, duration_value=1, duration_type="months", granted_by="demo-admin")

    print()
    print("Seed complete")
    with SessionLocal() as db:
        for game_id in [member[1] for member in DEMO_MEMBERS] + [DONOR_GAME_ID]:
            status = get_whitelist_status(db, game_id)
            print(f"{game_id} status={status.status} expiration={status.expiration} entries={status.entry_count}")
    print()
    print("Inspect:")
    print(f"  GET /whitelist/{DONOR_GAME_ID}/status")
    print(f"  GET /whitelist/{DEMO_MEMBERS[1][1]}/entries")
    print("  GET /audit")


if __name__ == "__main__":
    main()
