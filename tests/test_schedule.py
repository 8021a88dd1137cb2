from datetime import date

import payd.constants as C
from payd.schedule import upcoming_runs

from conftest import make_form


def test_weekly_runs():
    form = make_form(frequency=C.Frequency.WEEKLY, start_date=date(2026, 3, 2))
    runs = upcoming_runs(form, 3, today=date(2026, 3, 1))
    assert runs == [date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16)]


def test_monthly_runs_clamp_to_month_end():
    form = make_form(start_date=date(2027, 1, 31))
    runs = upcoming_runs(form, 4, today=date(2027, 1, 1))
    assert runs == [date(2027, 1, 31), date(2027, 2, 28), date(2027, 3, 31), date(2027, 4, 30)]


def test_monthly_runs_cross_year_and_leap_day():
    form = make_form(start_date=date(2027, 12, 29))
    runs = upcoming_runs(form, 3, today=date(2027, 12, 1))
    assert runs == [date(2027, 12, 29), date(2028, 1, 29), date(2028, 2, 29)]


def test_past_runs_are_skipped():
    form = make_form(frequency=C.Frequency.WEEKLY, start_date=date(2026, 1, 5))
    runs = upcoming_runs(form, 2, today=date(2026, 1, 20))
    assert runs == [date(2026, 1, 26), date(2026, 2, 2)]


def test_no_start_date_commences_today():
    runs = upcoming_runs(make_form(), 2, today=date(2026, 10, 18))
    assert runs == [date(2026, 10, 18), date(2026, 11, 18)]


def test_zero_count():
    assert upcoming_runs(make_form(), 0) == []
