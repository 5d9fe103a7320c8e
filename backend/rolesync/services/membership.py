"""Membership source contract and time-bounded live role lookups."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from threading import Lock
from time import perf_counter
from typing import Protocol

from rolesync.policy.role_tiers import normalize_role_name

logger = logging.getLogger(__name__)

_LOOKUP_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="membership-lookup")


class MembershipLookupError(RuntimeError):
    """Raised when the membership source is unavailable or returns garbage."""


@dataclass(slots=True, frozen=True)
class MembershipSnapshot:
    """Live role membership of one chat user."""

    roles: frozenset[str] = field(default_factory=frozenset)
    found: bool = True

    def holds(self, role_name: str | None) -> bool:
        return self.found and normalize_role_name(role_name) in self.roles


class MembershipSource(Protocol):
    def current_roles(self, chat_user_id: str) -> MembershipSnapshot: ...


class InMemoryMembershipSource:
    """Thread-safe in-process membership table."""

    def __init__(self, members: dict[str, Iterable[str]] | None = None) -> None:
        self._lock = Lock()
        self._members: dict[str, frozenset[str]] = {}
        for chat_user_id, roles in (members or {}).items():
            self.set_roles(chat_user_id, roles)

    def set_roles(self, chat_user_id: str, roles: Iterable[str]) -> None:
        with self._lock:
            self._members[chat_user_id] = frozenset(normalize_role_name(role) for role in roles)

    def remove_member(self, chat_user_id: str) -> None:
        with self._lock:
            self._members.pop(chat_user_id, None)

    def current_roles(self, chat_user_id: str) -> MembershipSnapshot:
        with self._lock:
            roles = self._members.get(chat_user_id)
        if roles is None:
            return MembershipSnapshot(roles=frozenset(), found=False)
        return MembershipSnapshot(roles=roles, found=True)


class UnavailableMembershipSource:
    """Placeholder until the host process wires a real source; every lookup fails closed."""

    def current_roles(self, chat_user_id: str) -> MembershipSnapshot:
        raise MembershipLookupError("No membership source configured")


def lookup_current_roles(
    source: MembershipSource,
    chat_user_id: str,
    *,
    timeout_seconds: float,
) -> MembershipSnapshot | None:
    """Ask the source for live roles; None means "not confirmed".

    Timeouts and source failures are logged at warning level and never raised,
    so callers stay fail-closed without blocking indefinitely.
    """

    started = perf_counter()
    future = _LOOKUP_EXECUTOR.submit(source.current_roles, chat_user_id)
    try:
        snapshot = future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(
            "membership.lookup_timeout chat_user_id=%s timeout_s=%.2f",
            chat_user_id,
            timeout_seconds,
        )
        return None
    except Exception as exc:
        logger.warning(
            "membership.lookup_failed chat_user_id=%s error=%s elapsed_ms=%.2f",
            chat_user_id,
            exc,
            (perf_counter() - started) * 1000.0,
        )
        return None

    if not isinstance(snapshot, MembershipSnapshot):
        logger.warning(
            "membership.lookup_invalid chat_user_id=%s result_type=%s",
            chat_user_id,
            type(snapshot).__name__,
        )
        return None
    logger.debug(
        "membership.lookup chat_user_id=%s found=%s roles=%d elapsed_ms=%.2f",
        chat_user_id,
        snapshot.found,
        len(snapshot.roles),
        (perf_counter() - started) * 1000.0,
    )
    return snapshot
