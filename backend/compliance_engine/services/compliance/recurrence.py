"""
Recurrence Arithmetic

Calendar math shared by the materializer and the recurrence generator.
next_in_series() computes occurrence k directly from the series base date,
so month-end clamping does not accumulate along a series (May 31 -> Aug 31
-> Nov 30 -> Feb 28 -> May 31). add_interval() steps from a single date and
does clamp cumulatively; it is only used where no series base is known.
"""
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from ...models.db_models import IntervalUnit
from ...models.engine_models import Recurrence, ObligationTemplate


ONE_TIME_CYCLE = "once"

# Upper bound on how many cycles we walk forward from an anchor
MAX_CYCLES = 2000


def interval_delta(recurrence: Recurrence, times: int = 1) -> relativedelta:
    """relativedelta covering `times` recurrence intervals."""
    steps = recurrence.interval_count * times
    if recurrence.interval_unit == IntervalUnit.YEAR:
        return relativedelta(years=steps)
    if recurrence.interval_unit == IntervalUnit.QUARTER:
        return relativedelta(months=3 * steps)
    if recurrence.interval_unit == IntervalUnit.MONTH:
        return relativedelta(months=steps)
    raise ValueError(f"Unsupported interval unit: {recurrence.interval_unit}")


def add_interval(due_date: date, recurrence: Recurrence) -> date:
    """One interval after `due_date`. Clamps: Jan 31 + 1 month is Feb 29."""
    return due_date + interval_delta(recurrence)


def cycle_key(due_date: date, recurrence: Optional[Recurrence]) -> str:
    """
    Cycle identifier: the due date truncated to the recurrence granularity.

    Annual and multi-year obligations key on the year, quarterly on the
    quarter, monthly on the month. One-time obligations have a single cycle.
    """
    if recurrence is None:
        return ONE_TIME_CYCLE
    if recurrence.interval_unit == IntervalUnit.YEAR:
        return f"{due_date.year:04d}"
    if recurrence.interval_unit == IntervalUnit.QUARTER:
        quarter = (due_date.month - 1) // 3 + 1
        return f"{due_date.year:04d}-Q{quarter}"
    return f"{due_date.year:04d}-{due_date.month:02d}"


def first_due_date(anchor: date, template: ObligationTemplate) -> date:
    return anchor + timedelta(days=template.anchor_offset_days)


def next_occurrence(anchor: date, template: ObligationTemplate, on_or_after: date) -> Optional[date]:
    """
    Earliest due date of the template's series that is >= `on_or_after`.

    Returns None for a one-time obligation whose only due date has passed.
    """
    base = first_due_date(anchor, template)
    if template.recurrence is None:
        return base if base >= on_or_after else None
    return next_in_series(base, template.recurrence, on_or_after)


def next_in_series(base: date, recurrence: Recurrence, on_or_after: date) -> Optional[date]:
    """Earliest `base + k intervals` (k >= 0) that is >= `on_or_after`."""
    if base >= on_or_after:
        return base

    # Jump close to the target before walking, so old anchors stay cheap
    unit_months = {
        IntervalUnit.YEAR: 12,
        IntervalUnit.QUARTER: 3,
        IntervalUnit.MONTH: 1,
    }[recurrence.interval_unit] * recurrence.interval_count
    months_between = (on_or_after.year - base.year) * 12 + (on_or_after.month - base.month)
    k = max(0, months_between // unit_months - 1)

    for _ in range(MAX_CYCLES):
        candidate = base + interval_delta(recurrence, k)
        if candidate >= on_or_after:
            return candidate
        k += 1

    return None


def recurrence_from_columns(unit: Optional[IntervalUnit], count: Optional[int]) -> Optional[Recurrence]:
    """Rebuild a Recurrence from the two ORM columns."""
    if unit is None:
        return None
    return Recurrence(interval_unit=unit, interval_count=count or 1)
