from datetime import datetime, timedelta, timezone

import pytest

from chat_core.domain.exceptions import ValidationError
from chat_core.usage.reset_time import billing_anchor_day, format_reset, next_daily_reset, next_monthly_reset


def test_next_monthly_reset_after_anchor_rolls_to_next_month():
    now = datetime(2025, 6, 20, 10, 30)
    assert next_monthly_reset(now, 15) == datetime(2025, 7, 15)


def test_next_monthly_reset_before_anchor_stays_in_month():
    now = datetime(2025, 6, 10, 8, 0)
    assert next_monthly_reset(now, 15) == datetime(2025, 6, 15)


def test_next_monthly_reset_on_anchor_midnight_is_next_month():
    assert next_monthly_reset(datetime(2025, 6, 15), 15) == datetime(2025, 7, 15)


def test_next_monthly_reset_december_wraps_year():
    assert next_monthly_reset(datetime(2025, 12, 20), 5) == datetime(2026, 1, 5)


def test_next_monthly_reset_clamps_to_month_end():
    assert next_monthly_reset(datetime(2025, 1, 31, 12), 31) == datetime(2025, 2, 28)
    assert next_monthly_reset(datetime(2024, 2, 1), 30) == datetime(2024, 2, 29)
    assert next_monthly_reset(datetime(2025, 4, 1), 31) == datetime(2025, 4, 30)


def test_next_monthly_reset_keeps_tzinfo():
    now = datetime(2025, 6, 20, tzinfo=timezone.utc)
    assert next_monthly_reset(now, 1).tzinfo is timezone.utc


@pytest.mark.parametrize("anchor", [0, 32, -1])
def test_next_monthly_reset_rejects_bad_anchor(anchor):
    with pytest.raises(ValidationError) as exc:
        next_monthly_reset(datetime(2025, 6, 20), anchor)
    assert exc.value.code == "INVALID_ANCHOR_DAY"


def test_next_daily_reset_is_next_midnight():
    assert next_daily_reset(datetime(2025, 6, 20, 23, 59)) == datetime(2025, 6, 21)
    assert next_daily_reset(datetime(2025, 6, 20)) == datetime(2025, 6, 21)
    assert next_daily_reset(datetime(2025, 12, 31, 8)) == datetime(2026, 1, 1)


def test_format_reset_relative_within_a_day():
    now = datetime(2025, 6, 20, 10, 0)
    assert format_reset(now + timedelta(hours=5, minutes=12, seconds=40), now) == "in 5h 12m"
    assert format_reset(now + timedelta(minutes=3), now) == "in 0h 3m"


def test_format_reset_negative_delta_clamps_to_zero():
    now = datetime(2025, 6, 20, 10, 0)
    assert format_reset(now - timedelta(minutes=5), now) == "in 0h 0m"


def test_format_reset_absolute_date_beyond_a_day():
    now = datetime(2025, 6, 20, 10, 0)
    assert format_reset(datetime(2025, 7, 15), now) == "on Jul 15"


def test_billing_anchor_day():
    assert billing_anchor_day(datetime(2025, 3, 15, 9, tzinfo=timezone.utc)) == 15
    assert billing_anchor_day(None) is None
