"""Reporting period generation for indicators."""

from __future__ import annotations

import calendar
import datetime as dt
import os
from typing import Dict, List, Optional, Tuple

FISCAL_YEAR_START_MONTH = max(1, min(12, int(os.environ.get("MERIDIAN_FISCAL_YEAR_START_MONTH", "10"))))

INDICATOR_FREQUENCIES = ["monthly", "quarterly", "termly", "annual", "custom"]
CALENDAR_TYPES = ["gregorian", "fiscal"]


def month_end(year: int, month: int) -> dt.date:
    return dt.date(year, month, calendar.monthrange(year, month)[1])


def add_months(year: int, month: int, offset: int) -> Tuple[int, int]:
    """Shift a (year, 1-based month) pair by ``offset`` months."""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def _period(key: str, start: dt.date, end: dt.date, due_days: int) -> Dict[str, str]:
    due = end + dt.timedelta(days=due_days)
    return {
        "period_key": key,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "due_date": due.isoformat(),
    }


def generate_periods(frequency: str, due_days_after_period_end: int, today: Optional[dt.date] = None) -> List[Dict[str, str]]:
    """Build the default reporting schedule for a new indicator.

    Monthly yields 12 periods starting with the current month, quarterly the current and next
    three calendar quarters, termly six four-month terms starting at term 1 of this year, and
    annual the current and next two years. ``custom`` (or anything unknown) yields nothing;
    those periods are entered by hand.
    """
    anchor = today or dt.date.today()
    due_days = int(due_days_after_period_end or 0)
    periods: List[Dict[str, str]] = []

    if frequency == "monthly":
        for i in range(12):
            year, month = add_months(anchor.year, anchor.month, i)
            periods.append(_period(f"{year}-{month:02d}", dt.date(year, month, 1), month_end(year, month), due_days))
    elif frequency == "quarterly":
        first_quarter = (anchor.month - 1) // 3
        for i in range(4):
            quarter = first_quarter + i
            year = anchor.year + quarter // 4
            quarter_in_year = quarter % 4
            start_month = quarter_in_year * 3 + 1
            periods.append(
                _period(
                    f"Q{quarter_in_year + 1}-{year}",
                    dt.date(year, start_month, 1),
                    month_end(year, start_month + 2),
                    due_days,
                )
            )
    elif frequency == "termly":
        # Term 1 Jan-Apr, Term 2 May-Aug, Term 3 Sep-Dec.
        for i in range(6):
            term = i % 3
            year = anchor.year + i // 3
            start_month = term * 4 + 1
            periods.append(
                _period(
                    f"Term {term + 1}-{year}",
                    dt.date(year, start_month, 1),
                    month_end(year, start_month + 3),
                    due_days,
                )
            )
    elif frequency == "annual":
        for i in range(3):
            year = anchor.year + i
            periods.append(_period(str(year), dt.date(year, 1, 1), dt.date(year, 12, 31), due_days))

    return periods


def fiscal_year_quarter(value: dt.date, start_month: int = FISCAL_YEAR_START_MONTH) -> Tuple[int, int]:
    """Return ``(fiscal_year, quarter)`` for a date.

    The fiscal year is named after the calendar year it ends in, so with an October start
    2024-11-15 is FY2025 Q1 and 2025-08-01 is FY2025 Q4.
    """
    offset = (value.month - start_month) % 12
    fiscal_year = value.year + (1 if start_month > 1 and value.month >= start_month else 0)
    return fiscal_year, offset // 3 + 1


def parse_period_date(value: object) -> Optional[dt.date]:
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def period_status(period: Dict[str, object], today: Optional[dt.date] = None) -> str:
    """Classify a period as upcoming, open, due or overdue relative to ``today``."""
    anchor = today or dt.date.today()
    start = parse_period_date(period.get("start_date"))
    end = parse_period_date(period.get("end_date"))
    due = parse_period_date(period.get("due_date")) or end
    if start and anchor < start:
        return "upcoming"
    if end and anchor <= end:
        return "open"
    if due and anchor <= due:
        return "due"
    return "overdue"
