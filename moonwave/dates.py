from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo
import calendar

from moonwave.domain import ANCHOR_RANGE, Cycle
from moonwave.errors import InvalidSubscriptionError

# yearly anchors are days of this (leap) year, so 60 is always Feb 29
_LEAP_REFERENCE_YEAR = 2000

def _last_day_of_month(y: int, m: int) -> int:
    return calendar.monthrange(y, m)[1]

def _clamped(y: int, m: int, day: int) -> date:
    # rule: a day the month does not have -> last day of that month
    return date(y, m, min(day, _last_day_of_month(y, m)))

def _add_months(y: int, m: int, n: int) -> tuple[int, int]:
    idx = y * 12 + (m - 1) + n
    return idx // 12, idx % 12 + 1

def yearly_month_day(anchor_day: int) -> tuple[int, int]:
    d = date(_LEAP_REFERENCE_YEAR, 1, 1) + timedelta(days=anchor_day - 1)
    return d.month, d.day

def yearly_anchor(month: int, dom: int) -> int:
    return date(_LEAP_REFERENCE_YEAR, month, dom).timetuple().tm_yday

def _check_anchor(cycle: Cycle, anchor_day: int) -> None:
    try:
        lo, hi = ANCHOR_RANGE[Cycle(cycle)]
    except ValueError:
        raise InvalidSubscriptionError(f"unknown cycle {cycle!r}") from None
    if not lo <= anchor_day <= hi:
        raise InvalidSubscriptionError(f"anchor_day {anchor_day} invalid for {cycle}")

def _calc_monthly(ref: date, day: int) -> date:
    candidate = _clamped(ref.year, ref.month, day)
    if candidate >= ref:
        return candidate
    y2, m2 = _add_months(ref.year, ref.month, 1)
    return _clamped(y2, m2, day)

def _calc_quarterly(ref: date, day: int, start_date: date) -> date:
    # quarters are counted from the month the subscription started in
    back = (ref.month - start_date.month) % 3
    y, m = _add_months(ref.year, ref.month, -back)
    candidate = _clamped(y, m, day)
    if candidate >= ref:
        return candidate
    y2, m2 = _add_months(y, m, 3)
    return _clamped(y2, m2, day)

def _calc_yearly(ref: date, anchor_day: int) -> date:
    month, dom = yearly_month_day(anchor_day)
    candidate = _clamped(ref.year, month, dom)
    if candidate >= ref:
        return candidate
    return _clamped(ref.year + 1, month, dom)

def _calc_weekly(ref: date, iso_weekday: int) -> date:
    return ref + timedelta(days=(iso_weekday - ref.isoweekday()) % 7)

def next_occurrence(
    cycle: Cycle,
    anchor_day: int,
    start_date: date,
    end_date: date | None,
    today: date,
) -> date | None:
    """Next billing date on/after both ``today`` and ``start_date``.

    Anchor days past the end of a short month land on that month's last day
    (31 -> Feb 28/29). Returns None once the subscription has lapsed, i.e.
    the next date would fall on/after ``end_date``. A one-time charge has
    a single occurrence, on ``start_date``.
    """
    _check_anchor(cycle, anchor_day)
    cycle = Cycle(cycle)
    ref = max(start_date, today)

    if cycle is Cycle.ONETIME:
        if start_date < today:
            return None
        candidate = start_date
    elif cycle is Cycle.MONTHLY:
        candidate = _calc_monthly(ref, anchor_day)
    elif cycle is Cycle.QUARTERLY:
        candidate = _calc_quarterly(ref, anchor_day, start_date)
    elif cycle is Cycle.YEARLY:
        candidate = _calc_yearly(ref, anchor_day)
    else:
        candidate = _calc_weekly(ref, anchor_day)

    if end_date is not None and candidate >= end_date:
        return None
    return candidate

def occurrences_between(
    cycle: Cycle,
    anchor_day: int,
    start_date: date,
    end_date: date | None,
    first: date,
    last: date,
) -> Iterator[date]:
    current = next_occurrence(cycle, anchor_day, start_date, end_date, first)
    while current is not None and current <= last:
        yield current
        current = next_occurrence(cycle, anchor_day, start_date, end_date, current + timedelta(days=1))

def today_in(tz: str, now: datetime | None = None) -> date:
    """Calendar date in ``tz``. Naive ``now`` is taken as UTC."""
    z = ZoneInfo(tz)
    if now is None:
        return datetime.now(z).date()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(z).date()

def local_run_at(day: date, run_hour: int, tz: str) -> datetime:
    return datetime.combine(day, time(run_hour, 0), tzinfo=ZoneInfo(tz))

def next_run_at(now: datetime, run_hour: int, tz: str) -> datetime:
    # now must be aware
    today = today_in(tz, now)
    run_at = local_run_at(today, run_hour, tz)
    if run_at <= now:
        run_at = local_run_at(today + timedelta(days=1), run_hour, tz)
    return run_at

def utc_now() -> datetime:
    return datetime.now(timezone.utc)
