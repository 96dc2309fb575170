"""Expansion of appointment recurrence rules into occurrence dates.

Rules use a small RRULE subset: ``FREQ=WEEKLY|MONTHLY;INTERVAL=n``. Anything
the expander does not understand is treated as a one-off appointment rather
than an error, so a bad rule never blocks a booking.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

# Upper bound on generated occurrences, regardless of the requested count
MAX_RECURRENCE_OCCURRENCES = 26

SUPPORTED_FREQUENCIES = ("WEEKLY", "MONTHLY")

_FREQ_RE = re.compile(r"FREQ=([A-Z]+)")
_INTERVAL_RE = re.compile(r"INTERVAL=(-?\d+)")


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str
    interval: int = 1


def parse_recurrence_rule(rule: object) -> RecurrenceRule | None:
    if not rule or not isinstance(rule, str):
        return None
    freq_match = _FREQ_RE.search(rule)
    if not freq_match:
        return None
    freq = freq_match.group(1)
    if freq not in SUPPORTED_FREQUENCIES:
        return None
    interval_match = _INTERVAL_RE.search(rule)
    interval = int(interval_match.group(1)) if interval_match else 1
    return RecurrenceRule(freq=freq, interval=interval if interval > 0 else 1)


def coerce_date(value: object) -> date | None:
    """Accept ``date`` objects or ``YYYY-MM-DD`` strings; anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _coerce_count(count: object) -> int | None:
    if count is None or count == "" or isinstance(count, bool):
        return None
    try:
        return max(1, int(count))
    except (TypeError, ValueError):
        return None


def build_recurrence_dates(
    start_date: date | str,
    rule: object,
    count: object = None,
    until: object = None,
) -> list[date]:
    """Return the ordered occurrence dates of a series, starting with ``start_date``.

    Weekly rules step ``7 * interval`` days. Monthly rules step calendar months
    from the start date; when the day does not exist in the target month it is
    clamped to the month's last day (Jan 31 -> Feb 28/29 -> Mar 31).
    ``until`` is inclusive. Whichever of ``count`` and ``until`` binds first
    wins, and the result never exceeds ``MAX_RECURRENCE_OCCURRENCES``.
    """
    start = coerce_date(start_date)
    if start is None:
        return [start_date] if start_date else []

    parsed = parse_recurrence_rule(rule)
    if parsed is None:
        return [start]

    limit = _coerce_count(count) or MAX_RECURRENCE_OCCURRENCES
    limit = min(limit, MAX_RECURRENCE_OCCURRENCES)
    until_date = coerce_date(until)

    occurrences = [start]
    step = 0
    while len(occurrences) < limit:
        step += 1
        if parsed.freq == "WEEKLY":
            candidate = start + timedelta(days=7 * parsed.interval * step)
        else:
            candidate = start + relativedelta(months=parsed.interval * step)
        if until_date and candidate > until_date:
            break
        if candidate != occurrences[-1]:
            occurrences.append(candidate)

    return occurrences
