"""
Dimensional rollups of transaction records.

Computes, per branch / product / department / customer:
- count (distinct records)
- total amount and total quantity
- average (total of the chosen value field / count)

Conservation: for any record set and dimension, the bucket totals add up to
the record amounts. Anything that cannot be attributed to a dimension value
(orphaned product references, records without line items, amounts that
differ from the sum of their lines) lands in the UNKNOWN_KEY bucket instead
of being dropped.
"""

from dataclasses import dataclass
from typing import Iterable
import numpy as np
import pandas as pd

from .records import (
    Dimension,
    LocalizedName,
    NameIndex,
    TransactionRecord,
    ValueField,
    customer_key,
)

UNKNOWN_KEY = "unknown"

LINE_DIMENSIONS = {Dimension.PRODUCT, Dimension.DEPARTMENT}

_COLUMNS = ["record", "key", "amount", "quantity"]


@dataclass(frozen=True)
class AggregateBucket:
    """One aggregated row for a single dimension value."""

    key: str
    count: int
    total_amount: float
    total_quantity: float
    average: float

    def total(self, value: ValueField) -> float:
        return self.total_amount if value is ValueField.AMOUNT else self.total_quantity


def _average(total: float, count: int) -> float:
    return total / count if count > 0 else 0.0


def _record_key(record: TransactionRecord, dimension: Dimension) -> str | None:
    if dimension is Dimension.BRANCH:
        return record.branch_id
    if dimension is Dimension.CUSTOMER:
        return customer_key(record.customer)
    raise ValueError(f"{dimension} is not a record-level dimension")


def _contributions(records: Iterable[TransactionRecord], dimension: Dimension) -> pd.DataFrame:
    """One row per (record, dimension value) share of amount and quantity."""
    rows = []
    for position, record in enumerate(records):
        if dimension not in LINE_DIMENSIONS:
            key = _record_key(record, dimension) or UNKNOWN_KEY
            rows.append((position, key, record.amount, record.total_quantity))
            continue

        for item in record.line_items:
            key = item.product_id if dimension is Dimension.PRODUCT else item.department_id
            rows.append((position, key or UNKNOWN_KEY, item.line_total, item.quantity))

        # Discounts, delivery fees or missing lines: keep the gap visible
        remainder = record.amount - record.line_total
        if not record.line_items or not np.isclose(remainder, 0.0, atol=1e-9):
            rows.append((position, UNKNOWN_KEY, remainder, 0.0))

    return pd.DataFrame(rows, columns=_COLUMNS)


def aggregate(
    records: Iterable[TransactionRecord],
    dimension: Dimension,
    value: ValueField = ValueField.AMOUNT,
) -> list[AggregateBucket]:
    """
    Group records by a dimension and reduce to sums, counts and averages.

    Args:
        records: Already time/branch filtered records
        dimension: Grouping axis
        value: Field the average is computed from (amount or quantity)

    Returns a fresh list of buckets ordered by key. Callers rank them with
    analytics.ranking; this function never sorts by value.
    """
    frame = _contributions(records, dimension)
    if frame.empty:
        return []

    grouped = (
        frame.groupby("key", sort=True)
        .agg(
            n=("record", "nunique"),
            total_amount=("amount", "sum"),
            total_quantity=("quantity", "sum"),
        )
        .reset_index()
    )

    buckets = []
    for row in grouped.itertuples(index=False):
        total = row.total_amount if value is ValueField.AMOUNT else row.total_quantity
        buckets.append(
            AggregateBucket(
                key=str(row.key),
                count=int(row.n),
                total_amount=float(row.total_amount),
                total_quantity=float(row.total_quantity),
                average=float(_average(total, int(row.n))),
            )
        )
    return buckets


def merge_buckets(
    *bucket_sets: Iterable[AggregateBucket],
    value: ValueField = ValueField.AMOUNT,
) -> list[AggregateBucket]:
    """
    Combine pre-aggregated partial sums (e.g. per-page server rollups).

    Counts and totals add; averages are recomputed from the merged totals,
    never averaged.
    """
    frame = pd.DataFrame(
        [
            (bucket.key, bucket.count, bucket.total_amount, bucket.total_quantity)
            for buckets in bucket_sets
            for bucket in buckets
        ],
        columns=["key", "n", "total_amount", "total_quantity"],
    )
    if frame.empty:
        return []

    merged = frame.groupby("key", sort=True).sum().reset_index()
    return [
        AggregateBucket(
            key=str(row.key),
            count=int(row.n),
            total_amount=float(row.total_amount),
            total_quantity=float(row.total_quantity),
            average=float(
                _average(
                    row.total_amount if value is ValueField.AMOUNT else row.total_quantity,
                    int(row.n),
                )
            ),
        )
        for row in merged.itertuples(index=False)
    ]


# Field names the backend uses in its rollup rows, by dimension
ROLLUP_KEYS = {
    Dimension.BRANCH: ("branchId", "branchName", "branchNameEn"),
    Dimension.PRODUCT: ("productId", "productName", "productNameEn"),
    Dimension.DEPARTMENT: ("departmentId", "departmentName", "departmentNameEn"),
    Dimension.CUSTOMER: ("customerPhone", "customerName", None),
}
ROLLUP_AMOUNT_FIELDS = ("totalRevenue", "totalSales", "totalValue", "totalAmount", "totalSpent")
ROLLUP_COUNT_FIELDS = ("saleCount", "count", "totalOrders", "totalReturns", "purchaseCount")


def _first_number(row: dict, fields: tuple[str, ...]) -> float:
    for name in fields:
        raw = row.get(name)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            continue
    return 0.0


def buckets_from_rollup(
    rows: Iterable[dict],
    dimension: Dimension,
    names: NameIndex | None = None,
    value: ValueField = ValueField.AMOUNT,
) -> list[AggregateBucket]:
    """
    Normalize server-side rollup rows (productSales, branchSales, ...) into buckets.

    Rows for the same key are merged, so the result behaves exactly like the
    output of `aggregate` and can be ranked or merged with it.
    """
    key_field, name_field, name_en_field = ROLLUP_KEYS[dimension]
    partials = []
    for row in rows:
        key = row.get(key_field)
        if key is None and dimension is Dimension.CUSTOMER:
            key = row.get(name_field)
        key = str(key) if key not in (None, "") else UNKNOWN_KEY

        count = int(_first_number(row, ROLLUP_COUNT_FIELDS))
        total_amount = _first_number(row, ROLLUP_AMOUNT_FIELDS)
        total_quantity = _first_number(row, ("totalQuantity", "quantity"))
        partials.append(
            AggregateBucket(
                key=key,
                count=count,
                total_amount=total_amount,
                total_quantity=total_quantity,
                average=0.0,
            )
        )

        if names is not None and key != UNKNOWN_KEY:
            names.add(
                dimension,
                key,
                LocalizedName(
                    ar=row.get(name_field),
                    en=row.get(name_en_field) if name_en_field else None,
                ),
            )

    return merge_buckets(partials, value=value)


def buckets_to_frame(buckets: Iterable[AggregateBucket]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "key": b.key,
                "count": b.count,
                "total_amount": b.total_amount,
                "total_quantity": b.total_quantity,
                "average": b.average,
            }
            for b in buckets
        ],
        columns=["key", "count", "total_amount", "total_quantity", "average"],
    )


def compute_totals(records: Iterable[TransactionRecord]) -> dict:
    """Overall totals for a record set (the headline numbers of a page)."""
    records = list(records)
    total_amount = sum(r.amount for r in records)
    total_quantity = sum(r.total_quantity for r in records)
    count = len(records)
    return {
        "count": count,
        "total_amount": float(total_amount),
        "total_quantity": float(total_quantity),
        "average": float(_average(total_amount, count)),
    }


def return_rate(
    returned: Iterable[TransactionRecord],
    sold: Iterable[TransactionRecord],
) -> float:
    """Returned amount as a fraction of sold (or ordered) amount. 0 if nothing sold."""
    sold_amount = sum(r.amount for r in sold)
    if sold_amount <= 0:
        return 0.0
    return float(sum(r.amount for r in returned) / sold_amount)
