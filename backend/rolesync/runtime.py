"""Process-wide wiring of reconcilers, notifier and read cache."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock

from rolesync.config import Settings, get_settings
from rolesync.policy.role_tiers import RoleTierPolicy
from rolesync.services.account_linking import AccountLinkingService
from rolesync.services.cache import CacheInvalidationNotifier, WhitelistStatusCache
from rolesync.services.departure import DepartureReconciler
from rolesync.services.membership import MembershipSnapshot, MembershipSource, UnavailableMembershipSource
from rolesync.services.revalidation import ConfidenceUpgradeRevalidator
from rolesync.services.role_sync import RoleSyncReconciler
from rolesync.services.transactions import SessionFactory
from rolesync.services.whitelist_admin import WhitelistAdminService


class SwitchableMembershipSource:
    """Delegates to whichever source the host process configured last."""

    def __init__(self, source: MembershipSource) -> None:
        self._lock = Lock()
        self._source = source

    def use(self, source: MembershipSource) -> None:
        with self._lock:
            self._source = source

    def current_roles(self, chat_user_id: str) -> MembershipSnapshot:
        with self._lock:
            source = self._source
        return source.current_roles(chat_user_id)


@dataclass(slots=True)
class SyncRuntime:
    session_factory: SessionFactory
    notifier: CacheInvalidationNotifier
    status_cache: WhitelistStatusCache
    membership: SwitchableMembershipSource
    reconciler: RoleSyncReconciler
    revalidator: ConfidenceUpgradeRevalidator
    departures: DepartureReconciler
    linking: AccountLinkingService
    admin: WhitelistAdminService


def build_runtime(
    session_factory: SessionFactory,
    *,
    membership_source: MembershipSource | None = None,
    settings: Settings | None = None,
) -> SyncRuntime:
    """Wire every component around one notifier and one per-user debouncer."""

    resolved = settings or get_settings()
    policy = RoleTierPolicy.from_settings(resolved)
    notifier = CacheInvalidationNotifier()
    status_cache = WhitelistStatusCache()
    notifier.subscribe(status_cache)
    membership = SwitchableMembershipSource(membership_source or UnavailableMembershipSource())

    reconciler = RoleSyncReconciler(
        session_factory,
        notifier,
        policy=policy,
        membership_source=membership,
        debounce_seconds=resolved.role_sync_debounce_seconds,
        lookup_timeout_seconds=resolved.membership_lookup_timeout_seconds,
    )
    revalidator = ConfidenceUpgradeRevalidator(
        session_factory,
        notifier,
        membership,
        policy=policy,
        lookup_timeout_seconds=resolved.membership_lookup_timeout_seconds,
        debouncer=reconciler.debouncer,
    )
    departures = DepartureReconciler(session_factory, notifier, debouncer=reconciler.debouncer)
    return SyncRuntime(
        session_factory=session_factory,
        notifier=notifier,
        status_cache=status_cache,
        membership=membership,
        reconciler=reconciler,
        revalidator=revalidator,
        departures=departures,
        linking=AccountLinkingService(session_factory, notifier, reconciler, revalidator),
        admin=WhitelistAdminService(session_factory, notifier),
    )


@lru_cache
def get_runtime() -> SyncRuntime:
    """Return the cached runtime bound to the configured database."""

    from rolesync.db.session import SessionLocal

    return build_runtime(SessionLocal)


def configure_membership_source(source: MembershipSource) -> None:
    """Point live membership lookups at the host's chat-platform adapter."""

    get_runtime().membership.use(source)
