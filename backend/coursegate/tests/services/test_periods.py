from datetime import datetime, timezone

from coursegate.services.periods import add_months, period_end


def _dt(y, m, d):
    return datetime(y, m, d, 10, 30, tzinfo=timezone.utc)


def test_month_end_clamps_to_shorter_month():
    assert add_months(_dt(2025, 1, 31), 1) == _dt(2025, 2, 28)
    assert add_months(_dt(2024, 1, 31), 1) == _dt(2024, 2, 29)


def test_year_rollover():
    assert add_months(_dt(2025, 12, 15), 1) == _dt(2026, 1, 15)


def test_period_end_by_type():
    start = _dt(2025, 3, 1)
    assert period_end(start, "monthly") == _dt(2025, 4, 1)
    assert period_end(start, "yearly") == _dt(2026, 3, 1)
    assert period_end(start, "lifetime") is None
