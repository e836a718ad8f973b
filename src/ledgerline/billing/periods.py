"""
Billing period arithmetic.

Pure, deterministic helpers. Month and year steps use ``relativedelta``,
which clamps to the last day of a shorter month (Jan 31 + 1 month is
Feb 29 in a leap year, Feb 28 otherwise).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import NamedTuple

from dateutil.relativedelta import relativedelta

from ledgerline.billing.core.enums import BillingInterval
from ledgerline.billing.exceptions import ValidationError


class PeriodBounds(NamedTuple):
    start: datetime
    end: datetime


def resolve_now(now: datetime | None = None) -> datetime:
    """``now`` as an aware UTC datetime, defaulting to the wall clock."""
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        raise ValidationError("Timestamps must be timezone-aware", field="now")
    return now.astimezone(UTC)


def _coerce_interval(interval: BillingInterval | str) -> BillingInterval:
    try:
        return BillingInterval(interval)
    except ValueError:
        raise ValidationError(f"Unknown billing interval: {interval!r}", field="interval") from None


def add_interval(date: datetime, interval: BillingInterval | str, count: int = 1) -> datetime:
    """Advance ``date`` by ``count`` billing intervals."""
    interval = _coerce_interval(interval)
    if count <= 0:
        raise ValidationError(
            "Interval count must be positive", field="interval_count", context={"count": count}
        )

    if interval == BillingInterval.DAY:
        return date + timedelta(days=count)
    if interval == BillingInterval.WEEK:
        return date + timedelta(weeks=count)
    if interval == BillingInterval.MONTH:
        return date + relativedelta(months=count)
    return date + relativedelta(years=count)


def period_bounds(
    anchor: datetime, interval: BillingInterval | str, count: int = 1
) -> PeriodBounds:
    """Return the billing period that starts at ``anchor``."""
    return PeriodBounds(anchor, add_interval(anchor, interval, count))


def trial_bounds(start: datetime, trial_days: int) -> PeriodBounds:
    if trial_days <= 0:
        raise ValidationError("Trial length must be positive", field="trial_days")
    return PeriodBounds(start, start + timedelta(days=trial_days))


def shift_period(bounds: PeriodBounds, delta: timedelta) -> PeriodBounds:
    """Move both bounds by ``delta`` (used when resuming a paused subscription)."""
    return PeriodBounds(bounds.start + delta, bounds.end + delta)


def next_boundary_after(
    boundary: datetime, interval: BillingInterval | str | None, now: datetime
) -> datetime | None:
    """First ``boundary + k * interval`` strictly after ``now``; ``None`` without an interval."""
    if interval is None:
        return None
    next_at = boundary
    while next_at <= now:
        next_at = add_interval(next_at, interval)
    return next_at


def remaining_fraction(period_start: datetime, period_end: datetime, at: datetime) -> Decimal:
    """Share of the period still ahead of ``at``, clamped to [0, 1]."""
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        raise ValidationError(
            "Period end must be after period start",
            context={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
        )
    remaining = Decimal(str((period_end - at).total_seconds())) / Decimal(str(total))
    return min(Decimal(1), max(Decimal(0), remaining))


__all__ = [
    "PeriodBounds",
    "resolve_now",
    "add_interval",
    "period_bounds",
    "trial_bounds",
    "shift_period",
    "next_boundary_after",
    "remaining_fraction",
]
