"""Duration stacking calculator for whitelist entries.

Consecutive grants compound from the earliest grant instead of resetting from
"now": durations of every still-valid entry are summed per unit and applied to
the anchor in a fixed order (months, then days, then hours).
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Protocol

WhitelistStatusValue = Literal["permanent", "active", "expired", "revoked", "none"]
DURATION_TYPE_VALUES: tuple[str, ...] = ("hours", "days", "months")


class StackableEntry(Protocol):
    duration_value: int | None
    duration_type: str | None
    granted_at: datetime
    approved: bool
    revoked: bool


@dataclass(slots=True, frozen=True)
class WhitelistStatus:
    """Derived privilege status for one game identity."""

    status: WhitelistStatusValue
    expiration: datetime | None
    entry_count: int


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as read back from SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-aware month addition, clamping to the target month's last day."""

    if months == 0:
        return value
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def apply_duration(anchor: datetime, *, months: int = 0, days: int = 0, hours: int = 0) -> datetime:
    shifted = add_months(ensure_utc(anchor), months)
    shifted = shifted + timedelta(days=days)
    return shifted + timedelta(hours=hours)


def calculate_entry_expiration(entry: StackableEntry) -> datetime | None:
    """Individual expiration of one entry; None means permanent."""

    if entry.duration_value is None or entry.duration_type is None:
        return None
    value = int(entry.duration_value)
    if entry.duration_type == "months":
        return apply_duration(entry.granted_at, months=value)
    if entry.duration_type == "days":
        return apply_duration(entry.granted_at, days=value)
    if entry.duration_type == "hours":
        return apply_duration(entry.granted_at, hours=value)
    raise ValueError(f"Unsupported duration type: {entry.duration_type!r}")


def calculate_whitelist_status(
    entries: Iterable[StackableEntry],
    *,
    now: datetime | None = None,
) -> WhitelistStatus:
    """Derive {status, expiration, entry_count} from all entries of one game id."""

    all_entries = list(entries)
    if not all_entries:
        return WhitelistStatus(status="none", expiration=None, entry_count=0)

    live = [entry for entry in all_entries if entry.approved and not entry.revoked]
    if not live:
        if all(entry.revoked for entry in all_entries):
            return WhitelistStatus(status="revoked", expiration=None, entry_count=0)
        return WhitelistStatus(status="none", expiration=None, entry_count=0)

    if any(entry.duration_value is None or entry.duration_type is None for entry in live):
        return WhitelistStatus(status="permanent", expiration=None, entry_count=len(live))

    current = ensure_utc(now or datetime.now(timezone.utc))
    timed = [
        (entry, calculate_entry_expiration(entry))
        for entry in live
        if int(entry.duration_value or 0) != 0
    ]
    valid = [entry for entry, expiration in timed if expiration is not None and expiration > current]

    if not valid:
        expirations = [expiration for _, expiration in timed if expiration is not None]
        latest = max(expirations) if expirations else None
        return WhitelistStatus(status="expired", expiration=latest, entry_count=0)

    totals = {duration_type: 0 for duration_type in DURATION_TYPE_VALUES}
    for entry in valid:
        totals[entry.duration_type] += int(entry.duration_value)

    anchor = min(ensure_utc(entry.granted_at) for entry in valid)
    stacked = apply_duration(
        anchor,
        months=totals["months"],
        days=totals["days"],
        hours=totals["hours"],
    )
    status: WhitelistStatusValue = "active" if stacked > current else "expired"
    return WhitelistStatus(status=status, expiration=stacked, entry_count=len(valid))
