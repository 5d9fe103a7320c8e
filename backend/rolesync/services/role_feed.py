"""Concurrent consumer for the role-observation feed."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from time import perf_counter

from rolesync.services.departure import DepartureReconciler
from rolesync.services.role_sync import OUTCOME_DEBOUNCED, RoleObservation, RoleSyncReconciler

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class MemberDeparture:
    """A chat user left the community."""

    chat_user_id: str


FeedEvent = RoleObservation | MemberDeparture


@dataclass(slots=True)
class FeedSummary:
    processed: int = 0
    debounced: int = 0
    skipped: int = 0
    failed: int = 0


def consume_feed(
    events: Iterable[FeedEvent],
    *,
    reconciler: RoleSyncReconciler,
    departures: DepartureReconciler,
    max_workers: int = 4,
) -> FeedSummary:
    """Dispatch at-least-once feed events; per-user ordering is left to the debouncer."""

    started = perf_counter()
    summary = FeedSummary()
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="role-feed") as pool:
        futures = {pool.submit(_dispatch, event, reconciler, departures): event for event in events}
        for future in as_completed(futures):
            event = futures[future]
            try:
                debounced = future.result()
            except ValueError as exc:
                summary.skipped += 1
                logger.warning("role_feed.invalid_event event=%r error=%s", event, exc)
                continue
            except Exception:
                summary.failed += 1
                logger.exception("role_feed.event_failed event=%r", event)
                continue
            if debounced:
                summary.debounced += 1
            else:
                summary.processed += 1

    logger.info(
        "role_feed.consumed processed=%d debounced=%d skipped=%d failed=%d total_ms=%.2f",
        summary.processed,
        summary.debounced,
        summary.skipped,
        summary.failed,
        (perf_counter() - started) * 1000.0,
    )
    return summary


def _dispatch(event: FeedEvent, reconciler: RoleSyncReconciler, departures: DepartureReconciler) -> bool:
    if isinstance(event, MemberDeparture):
        departures.handle_departure(event.chat_user_id)
        return False
    return reconciler.handle_observation(event).outcome == OUTCOME_DEBOUNCED
