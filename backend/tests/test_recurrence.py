"""
Tests for recurrence arithmetic: cycle keys, interval addition and
next-occurrence search from a formation anchor.
"""
import pytest
from datetime import date

from compliance_engine.models.db_models import IntervalUnit
from compliance_engine.models.engine_models import ObligationTemplate, Recurrence
from compliance_engine.services.compliance.recurrence import (
    add_interval, cycle_key, next_in_series, next_occurrence, recurrence_from_columns, ONE_TIME_CYCLE,
)


ANNUAL = Recurrence(IntervalUnit.YEAR)
QUARTERLY = Recurrence(IntervalUnit.QUARTER)
MONTHLY = Recurrence(IntervalUnit.MONTH)


# =============================================================================
# CYCLE KEYS
# =============================================================================

class TestCycleKey:

    def test_annual_keys_on_year(self):
        assert cycle_key(date(2024, 3, 15), ANNUAL) == "2024"

    def test_quarterly_keys_on_quarter(self):
        assert cycle_key(date(2024, 5, 15), QUARTERLY) == "2024-Q2"
        assert cycle_key(date(2024, 12, 31), QUARTERLY) == "2024-Q4"

    def test_monthly_keys_on_month(self):
        assert cycle_key(date(2024, 5, 1), MONTHLY) == "2024-05"

    def test_one_time_has_single_cycle(self):
        assert cycle_key(date(2024, 5, 1), None) == ONE_TIME_CYCLE
        assert cycle_key(date(2030, 1, 1), None) == ONE_TIME_CYCLE

    def test_key_ignores_day_within_cycle(self):
        """Two due dates in the same year are the same annual cycle."""
        assert cycle_key(date(2024, 1, 1), ANNUAL) == cycle_key(date(2024, 12, 31), ANNUAL)


# =============================================================================
# INTERVALS
# =============================================================================

class TestAddInterval:

    def test_annual_keeps_calendar_day(self):
        assert add_interval(date(2024, 3, 15), ANNUAL) == date(2025, 3, 15)

    def test_month_end_is_clamped(self):
        assert add_interval(date(2024, 1, 31), MONTHLY) == date(2024, 2, 29)
        assert add_interval(date(2024, 11, 30), QUARTERLY) == date(2025, 2, 28)

    def test_biennial(self):
        assert add_interval(date(2024, 4, 1), Recurrence(IntervalUnit.YEAR, 2)) == date(2026, 4, 1)

    def test_invalid_interval_count(self):
        with pytest.raises(ValueError):
            Recurrence(IntervalUnit.YEAR, 0)

    def test_recurrence_from_columns(self):
        assert recurrence_from_columns(None, None) is None
        assert recurrence_from_columns(IntervalUnit.QUARTER, None) == Recurrence(IntervalUnit.QUARTER, 1)


# =============================================================================
# NEXT OCCURRENCE
# =============================================================================

class TestNextOccurrence:

    template = ObligationTemplate(
        event_type="annual_report",
        title="Annual Report",
        recurrence=ANNUAL,
        anchor_offset_days=365,
    )

    def test_first_occurrence_from_anchor(self):
        """Formed 2023-01-10 with a 365 day offset: first due 2024-01-10."""
        assert next_occurrence(date(2023, 1, 10), self.template, date(2024, 1, 1)) == date(2024, 1, 10)

    def test_due_today_counts(self):
        assert next_occurrence(date(2023, 1, 10), self.template, date(2024, 1, 10)) == date(2024, 1, 10)

    def test_rolls_to_next_cycle_once_passed(self):
        assert next_occurrence(date(2023, 1, 10), self.template, date(2024, 1, 11)) == date(2025, 1, 10)

    def test_old_anchor(self):
        template = ObligationTemplate(event_type="t", title="t", recurrence=ANNUAL)
        assert next_occurrence(date(1990, 1, 10), template, date(2024, 6, 1)) == date(2025, 1, 10)

    def test_quarterly_series(self):
        template = ObligationTemplate(event_type="q", title="q", recurrence=QUARTERLY, anchor_offset_days=0)
        assert next_occurrence(date(2023, 1, 15), template, date(2024, 2, 1)) == date(2024, 4, 15)

    def test_one_time_in_future(self):
        template = ObligationTemplate(event_type="boi", title="BOI", recurrence=None, anchor_offset_days=90)
        assert next_occurrence(date(2024, 1, 1), template, date(2024, 2, 1)) == date(2024, 3, 31)

    def test_one_time_past_returns_none(self):
        template = ObligationTemplate(event_type="boi", title="BOI", recurrence=None, anchor_offset_days=90)
        assert next_occurrence(date(2020, 1, 1), template, date(2024, 2, 1)) is None


# =============================================================================
# SERIES FROM A BASE DATE
# =============================================================================

class TestNextInSeries:

    def test_month_end_does_not_drift(self):
        """Stepping from each previous date would end on May 28; the series stays on May 31."""
        base = date(2023, 5, 31)
        walked = []
        on_or_after = base
        for _ in range(5):
            due = next_in_series(base, QUARTERLY, on_or_after)
            walked.append(due)
            on_or_after = date.fromordinal(due.toordinal() + 1)

        assert walked == [
            date(2023, 5, 31), date(2023, 8, 31), date(2023, 11, 30),
            date(2024, 2, 29), date(2024, 5, 31),
        ]

    def test_stepping_clamps_cumulatively(self):
        stepped = add_interval(add_interval(add_interval(date(2023, 11, 30), QUARTERLY), QUARTERLY), QUARTERLY)
        assert stepped == date(2024, 8, 29)
        assert next_in_series(date(2023, 5, 31), QUARTERLY, date(2024, 6, 1)) == date(2024, 8, 31)

    def test_base_in_future(self):
        assert next_in_series(date(2025, 1, 10), ANNUAL, date(2024, 1, 1)) == date(2025, 1, 10)
