import datetime as dt

import pytest

from app.periods import add_months, fiscal_year_quarter, generate_periods, period_status

ANCHOR = dt.date(2025, 11, 15)


def test_monthly_schedule_starts_with_current_month():
    periods = generate_periods("monthly", 15, ANCHOR)
    assert len(periods) == 12
    assert periods[0] == {
        "period_key": "2025-11",
        "start_date": "2025-11-01",
        "end_date": "2025-11-30",
        "due_date": "2025-12-15",
    }
    assert periods[-1]["period_key"] == "2026-10"


def test_quarterly_schedule_rolls_into_next_year():
    periods = generate_periods("quarterly", 0, ANCHOR)
    assert [p["period_key"] for p in periods] == ["Q4-2025", "Q1-2026", "Q2-2026", "Q3-2026"]
    assert periods[0]["start_date"] == "2025-10-01"
    assert periods[0]["end_date"] == "2025-12-31"
    assert periods[0]["due_date"] == "2025-12-31"


def test_termly_schedule_uses_four_month_terms():
    periods = generate_periods("termly", 10, dt.date(2025, 6, 1))
    assert len(periods) == 6
    assert periods[0]["period_key"] == "Term 1-2025"
    assert periods[0]["end_date"] == "2025-04-30"
    assert periods[2]["start_date"] == "2025-09-01"
    assert periods[2]["end_date"] == "2025-12-31"
    assert periods[3]["period_key"] == "Term 1-2026"


def test_annual_and_custom():
    annual = generate_periods("annual", 30, ANCHOR)
    assert [p["period_key"] for p in annual] == ["2025", "2026", "2027"]
    assert annual[0]["due_date"] == "2026-01-30"
    assert generate_periods("custom", 15, ANCHOR) == []
    assert generate_periods("fortnightly", 15, ANCHOR) == []


def test_add_months_wraps_years():
    assert add_months(2025, 11, 3) == (2026, 2)
    assert add_months(2025, 1, -1) == (2024, 12)


@pytest.mark.parametrize(
    "day, expected",
    [
        (dt.date(2024, 11, 15), (2025, 1)),
        (dt.date(2025, 1, 10), (2025, 2)),
        (dt.date(2025, 8, 1), (2025, 4)),
        (dt.date(2025, 10, 1), (2026, 1)),
    ],
)
def test_fiscal_year_starts_in_october(day, expected):
    assert fiscal_year_quarter(day, 10) == expected


def test_fiscal_year_with_january_start_matches_calendar():
    assert fiscal_year_quarter(dt.date(2025, 5, 1), 1) == (2025, 2)


def test_period_status_transitions():
    period = {"start_date": "2025-01-01", "end_date": "2025-03-31", "due_date": "2025-04-15"}
    assert period_status(period, dt.date(2024, 12, 31)) == "upcoming"
    assert period_status(period, dt.date(2025, 3, 31)) == "open"
    assert period_status(period, dt.date(2025, 4, 10)) == "due"
    assert period_status(period, dt.date(2025, 4, 16)) == "overdue"


def test_period_status_without_due_date_uses_end():
    period = {"start_date": "2025-01-01", "end_date": "2025-03-31", "due_date": None}
    assert period_status(period, dt.date(2025, 4, 1)) == "overdue"
