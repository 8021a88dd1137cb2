"""Recurring payment dates for a payroll draft."""

import calendar
from collections.abc import Iterator
from datetime import date, timedelta
from itertools import islice

import payd.constants as C
from payd.models import PayrollForm


def _add_months(start: date, months: int) -> date:
    """Same day-of-month ``months`` later, clamped to the month's last day."""
    month_index = start.month - 1 + months
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def iter_runs(start: date, frequency: C.Frequency) -> Iterator[date]:
    n = 0
    while True:
        if frequency == C.Frequency.WEEKLY:
            yield start + timedelta(weeks=n)
        else:
            yield _add_months(start, n)
        n += 1


def upcoming_runs(form: PayrollForm, count: int = 6, *, today: date | None = None) -> list[date]:
    """Next ``count`` payment dates on or after ``today``.

    A draft without a start date commences ``today``.
    """
    if count < 1:
        return []
    today = today or date.today()
    start = form.start_date or today
    runs = (d for d in iter_runs(start, C.Frequency(form.frequency)) if d >= today)
    return list(islice(runs, count))
