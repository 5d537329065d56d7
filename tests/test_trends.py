"""Tests for day-bucketed trend series."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from analytics import InvalidDateRange, ValueField, bucket_by_day, compare_series, day_range
from analytics.trends import trend_to_frame

from conftest import line, record


def at(day, hour=12):
    return datetime(2025, 1, day, hour, 0, tzinfo=timezone.utc)


def test_one_point_per_day_in_order():
    points = bucket_by_day([], date(2025, 1, 30), date(2025, 2, 2))

    assert [p.period_label for p in points] == ["2025-01-30", "2025-01-31", "2025-02-01", "2025-02-02"]
    assert all(p.total_amount == 0 and p.count == 0 for p in points)


@pytest.mark.parametrize("days", [0, 1, 6, 30])
def test_point_count_matches_inclusive_range(days):
    start = date(2025, 3, 1)
    points = bucket_by_day([], start, start + timedelta(days=days))
    assert len(points) == days + 1
    assert len({p.period_label for p in points}) == days + 1


def test_records_fold_into_their_day():
    records = [
        record("s1", amount=10, when=at(1)),
        record("s2", amount=15, when=at(1, 23)),
        record("s3", amount=7, when=at(3)),
    ]
    points = bucket_by_day(records, date(2025, 1, 1), date(2025, 1, 3))

    assert [p.total_amount for p in points] == [25, 0, 7]
    assert [p.count for p in points] == [2, 0, 1]


def test_out_of_range_records_are_discarded():
    records = [record("early", amount=99, when=at(1)), record("in", amount=5, when=at(2)), record("late", amount=99, when=at(4))]
    points = bucket_by_day(records, date(2025, 1, 2), date(2025, 1, 3))

    assert sum(p.total_amount for p in points) == 5


def test_start_after_end_is_an_error():
    with pytest.raises(InvalidDateRange):
        bucket_by_day([], date(2025, 1, 5), date(2025, 1, 1))
    with pytest.raises(ValueError):
        day_range("2025-01-05", "2025-01-01")


def test_timezone_moves_late_records_to_next_day():
    riyadh = ZoneInfo("Asia/Riyadh")
    records = [record("s1", amount=10, when=at(1, 22))]
    points = bucket_by_day(records, date(2025, 1, 1), date(2025, 1, 2), tz=riyadh)
    assert [p.total_amount for p in points] == [0, 10]


def test_quantity_value_field():
    records = [record("s1", lines=[line("p1", 3, 2.0)], when=at(1))]
    [point] = bucket_by_day(records, date(2025, 1, 1), date(2025, 1, 1), value=ValueField.QUANTITY)
    assert point.value == 3
    assert point.total_amount == 6


def test_compare_series_ratio():
    orders = [record("o1", amount=100, when=at(1)), record("o2", amount=50, when=at(2))]
    returns = [record("r1", amount=25, when=at(1))]
    points = compare_series(orders, returns, date(2025, 1, 1), date(2025, 1, 3))

    assert [p.return_ratio for p in points] == [0.25, 0.0, 0.0]
    assert [p.orders_count for p in points] == [1, 1, 0]


def test_trend_frame_columns():
    frame = trend_to_frame(bucket_by_day([], date(2025, 1, 1), date(2025, 1, 2)))
    assert list(frame.columns) == ["period", "total_amount", "total_quantity", "count"]
    assert len(frame) == 2
