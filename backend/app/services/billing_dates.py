"""Billing-date and proration arithmetic.

Pure functions over billing-cycle descriptors. Nothing in here reads the clock
or the database; callers pass ``now`` explicitly.
"""

import calendar as cal
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.models.plan import BillingCycle

# Day counts used for daily rates. Conventional, not calendar-exact.
CYCLE_DAYS = {
    BillingCycle.MONTHLY.value: 30,
    BillingCycle.QUARTERLY.value: 90,
    BillingCycle.ANNUAL.value: 365,
}

CYCLE_MONTHS = {
    BillingCycle.MONTHLY.value: 1,
    BillingCycle.QUARTERLY.value: 3,
    BillingCycle.ANNUAL.value: 12,
}

# Gateway price tiers are derived from the monthly price.
PRICE_TIER_MULTIPLIERS = {
    BillingCycle.MONTHLY.value: 1,
    BillingCycle.QUARTERLY.value: 3,
    BillingCycle.ANNUAL.value: 12,
}

CENTS = Decimal("0.01")


def _cycle_key(cycle: BillingCycle | str) -> str:
    value = cycle.value if isinstance(cycle, BillingCycle) else str(cycle)
    if value not in CYCLE_DAYS:
        raise ValueError(f"Unknown billing cycle: {value}")
    return value


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tz info on the way back)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def days_in_cycle(cycle: BillingCycle | str) -> int:
    return CYCLE_DAYS[_cycle_key(cycle)]


def add_cycle(dt: datetime, cycle: BillingCycle | str, count: int = 1) -> datetime:
    """Advance a date by whole billing cycles on the calendar."""
    return _add_months(dt, CYCLE_MONTHS[_cycle_key(cycle)] * count)


def tier_price(monthly_price: Decimal, cycle: BillingCycle | str) -> Decimal:
    """Price charged per cycle for a plan whose base price is monthly."""
    multiplier = PRICE_TIER_MULTIPLIERS[_cycle_key(cycle)]
    return (Decimal(monthly_price) * multiplier).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to the integer cents gateways expect."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(CENTS)


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days left until ``period_end``; negative once it has passed."""
    return (ensure_utc(period_end) - ensure_utc(now)).days


def calculate_prorated_amount(
    old_price: Decimal,
    new_price: Decimal,
    days_left: int,
    cycle_days: int,
) -> Decimal:
    """Charge (or credit, when negative) for switching price mid-cycle.

    ``(new_price / cycle_days - old_price / cycle_days) * days_left``, rounded
    to cents. Nothing is owed once the period is over.
    """
    if days_left <= 0 or cycle_days <= 0:
        return Decimal("0.00")
    old_rate = Decimal(old_price) / cycle_days
    new_rate = Decimal(new_price) / cycle_days
    return ((new_rate - old_rate) * days_left).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TrialWindow:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) < self.end


def trial_window(start: datetime, trial_days: int) -> TrialWindow | None:
    """Trial period beginning at ``start``; None when the plan has no trial."""
    if trial_days <= 0:
        return None
    start = ensure_utc(start)
    return TrialWindow(start=start, end=start + timedelta(days=trial_days))


def first_billing_date(start: datetime, cycle: BillingCycle | str, trial_days: int = 0) -> datetime:
    """First charge date: end of the trial if any, else one cycle after start."""
    window = trial_window(start, trial_days)
    if window is not None:
        return window.end
    return add_cycle(ensure_utc(start), cycle)


def next_billing_date(current: datetime, cycle: BillingCycle | str, now: datetime) -> datetime:
    """Roll ``current`` forward one cycle, skipping cycles already in the past.

    The result is always strictly after ``current`` so a billing date never
    moves backwards.
    """
    current = ensure_utc(current)
    now = ensure_utc(now)
    candidate = add_cycle(current, cycle)
    while candidate <= now:
        candidate = add_cycle(candidate, cycle)
    return candidate
