"""Billing/serving cycle math for recurring plans.

All functions are pure: "today" is always passed in, never read from the clock.
Dates go in as ``date`` or ``YYYY-MM-DD`` and come back as ``YYYY-MM-DD``.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable

from utils.datetime_utils import is_weekday, parse_iso_date


PLAN_PERIOD_DAYS: dict[str, int] = {"trial": 3, "weekly": 7, "monthly": 28}
PLAN_DEFAULT_SERVINGS: dict[str, int] = {"trial": 3, "weekly": 5, "monthly": 20}
RECURRING_PLANS = {"weekly", "monthly"}
ONE_OFF_PLANS = {"single", "trial"}


def _plan(plan: str | None) -> str:
    return str(plan or "").strip().lower()


def period_days(plan: str | None) -> int:
    return PLAN_PERIOD_DAYS.get(_plan(plan), 1)


def default_total_servings(plan: str | None) -> int:
    return PLAN_DEFAULT_SERVINGS.get(_plan(plan), 1)


def current_cycle_start(base_start: date | str, plan: str | None, today: date | str) -> str:
    """Start of the cycle containing ``today``, re-anchored to the original base date."""
    base = parse_iso_date(base_start)
    now = parse_iso_date(today)
    if base is None or now is None:
        fallback = base or now
        return fallback.isoformat() if fallback else ""
    period = period_days(plan)
    diff_days = (now - base).days
    cycles = diff_days // period if diff_days > 0 else 0
    return (base + timedelta(days=cycles * period)).isoformat()


def base_cycle_end(cycle_start: date | str, plan: str | None) -> str:
    start = parse_iso_date(cycle_start)
    if start is None:
        return ""
    return (start + timedelta(days=period_days(plan) - 1)).isoformat()


def last_weekday_in_cycle(cycle_start: date | str, plan: str | None) -> str:
    """Last Monday-Friday date inside the raw cycle window (raw end if there is none)."""
    start = parse_iso_date(cycle_start)
    if start is None:
        return ""
    for offset in range(period_days(plan) - 1, -1, -1):
        candidate = start + timedelta(days=offset)
        if is_weekday(candidate):
            return candidate.isoformat()
    return base_cycle_end(start, plan)


def extended_cycle_end(base_end: date | str, cycle_start: date | str, skipped_dates: Iterable[str]) -> str:
    """Push the cycle end out by one day per skipped date that falls inside the window.

    Extending the end can pull later skip dates into range, so this iterates to a
    fixed point. The end only ever grows and can absorb each skip date at most
    once, which bounds the loop at ``len(skipped) + 1`` passes.
    """
    end_date = parse_iso_date(base_end)
    start_date = parse_iso_date(cycle_start)
    if end_date is None or start_date is None:
        fallback = end_date or start_date
        return fallback.isoformat() if fallback else ""
    start = start_date.isoformat()
    base = end_date
    skipped = sorted({str(d).strip() for d in skipped_dates or [] if parse_iso_date(d)})

    end = base.isoformat()
    for _ in range(len(skipped) + 1):
        absorbed = sum(1 for d in skipped if start <= d <= end)
        next_end = (base + timedelta(days=absorbed)).isoformat()
        if next_end == end:
            break
        end = next_end
    return end
