"""
Day-bucketed trend series.

The list of calendar days in [start, end] is built first and defines the
buckets; records are then folded into the bucket of their day. Days with no
activity still appear with zero totals, and records outside the range are
discarded rather than clipped onto the first or last day.
"""

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Iterable
import pandas as pd

from .records import TransactionRecord, ValueField

LABEL_FORMAT = "%Y-%m-%d"


class InvalidDateRange(ValueError):
    """Raised when a trend is requested for a range whose start is after its end."""


@dataclass(frozen=True)
class TrendPoint:
    period_label: str
    day: date
    total_amount: float
    total_quantity: float
    count: int
    value: float


@dataclass(frozen=True)
class ComparisonPoint:
    """Orders vs returns for one day."""

    period_label: str
    day: date
    orders_amount: float
    orders_count: int
    returns_amount: float
    returns_count: int
    return_ratio: float


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def day_range(start: date | datetime | str, end: date | datetime | str) -> list[date]:
    """Every calendar day in the inclusive range. Raises InvalidDateRange if start > end."""
    start_day, end_day = _as_date(start), _as_date(end)
    if start_day > end_day:
        raise InvalidDateRange(f"start {start_day} is after end {end_day}")
    return [ts.date() for ts in pd.date_range(start_day, end_day, freq="D")]


def _day_frame(records: Iterable[TransactionRecord], labels: set[str], tz: tzinfo | None) -> pd.DataFrame:
    rows = []
    for record in records:
        label = record.day(tz).strftime(LABEL_FORMAT)
        if label in labels:
            rows.append((label, record.amount, record.total_quantity))
    return pd.DataFrame(rows, columns=["label", "amount", "quantity"])


def bucket_by_day(
    records: Iterable[TransactionRecord],
    start: date | datetime | str,
    end: date | datetime | str,
    value: ValueField = ValueField.AMOUNT,
    tz: tzinfo | None = None,
) -> list[TrendPoint]:
    """
    Build one TrendPoint per calendar day in [start, end], in order.

    Args:
        records: Records to fold in; those outside the range are ignored
        start, end: Inclusive calendar days
        value: Field reported as `TrendPoint.value`
        tz: Timezone used to assign aware timestamps to a day

    The number of points always equals the inclusive day count of the range.
    """
    days = day_range(start, end)
    labels = [d.strftime(LABEL_FORMAT) for d in days]

    frame = _day_frame(records, set(labels), tz)
    totals = (
        frame.groupby("label")
        .agg(
            amount=("amount", "sum"),
            quantity=("quantity", "sum"),
            n=("amount", "size"),
        )
        .reindex(labels, fill_value=0)
    )

    points = []
    for day, label in zip(days, labels):
        row = totals.loc[label]
        amount = float(row["amount"])
        quantity = float(row["quantity"])
        points.append(
            TrendPoint(
                period_label=label,
                day=day,
                total_amount=amount,
                total_quantity=quantity,
                count=int(row["n"]),
                value=amount if value is ValueField.AMOUNT else quantity,
            )
        )
    return points


def compare_series(
    orders: Iterable[TransactionRecord],
    returns: Iterable[TransactionRecord],
    start: date | datetime | str,
    end: date | datetime | str,
    tz: tzinfo | None = None,
) -> list[ComparisonPoint]:
    """Daily orders vs returns over the same days, with the per-day return ratio."""
    order_points = bucket_by_day(orders, start, end, tz=tz)
    return_points = bucket_by_day(returns, start, end, tz=tz)

    return [
        ComparisonPoint(
            period_label=o.period_label,
            day=o.day,
            orders_amount=o.total_amount,
            orders_count=o.count,
            returns_amount=r.total_amount,
            returns_count=r.count,
            return_ratio=r.total_amount / o.total_amount if o.total_amount > 0 else 0.0,
        )
        for o, r in zip(order_points, return_points)
    ]


def trend_to_frame(points: Iterable[TrendPoint]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "period": p.period_label,
                "total_amount": p.total_amount,
                "total_quantity": p.total_quantity,
                "count": p.count,
            }
            for p in points
        ],
        columns=["period", "total_amount", "total_quantity", "count"],
    )
