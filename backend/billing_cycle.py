from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime

CYCLE_MONTHS = {
    "monthly": 1,
    "halfyear": 6,
    "yearly": 12,
}


def normalize_cycle(value: str | None) -> str:
    return "".join(ch for ch in (value or "").strip().lower() if ch.isalnum())


def cycle_months(cycle: str | None) -> int | None:
    return CYCLE_MONTHS.get(normalize_cycle(cycle))


def next_billing_date(anchor: date, cycle: str | None, now: date | datetime) -> date:
    """Roll ``anchor`` forward by whole cycles until it is on or after ``now``.

    Every occurrence is derived from the original anchor with its day clamped
    to the target month, so 2024-01-31 bills on 2024-02-29 and then again on
    2024-03-31 rather than drifting to the 29th. Unknown cycles leave the
    anchor untouched.
    """
    anchor = _as_date(anchor)
    minimum_date = _as_date(now)
    step = cycle_months(cycle)
    if step is None or anchor >= minimum_date:
        return anchor

    months_between = (minimum_date.year - anchor.year) * 12 + (
        minimum_date.month - anchor.month
    )
    offset = (months_between // step) * step
    candidate = _add_months(anchor, offset, anchor.day)
    while candidate < minimum_date:
        offset += step
        candidate = _add_months(anchor, offset, anchor.day)
    return candidate


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
