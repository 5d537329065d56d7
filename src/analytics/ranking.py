"""
Top-N / least-N selection over aggregate buckets.

Both views come from one canonical ordering of the same bucket set:
- canonical order: sort field descending, then key ascending
- top N: the first N of the canonical order
- least N: the first N of the canonical order reversed

Because least-N is read from the far end of the same sequence, the two
views never share a bucket while N_top + N_least <= number of buckets, and
re-running on equal aggregates always yields identical ordering.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence
import pandas as pd

from .aggregation import AggregateBucket

RANK_FIELDS = ("total_amount", "total_quantity", "count", "average")


class Direction(Enum):
    TOP = "top"
    LEAST = "least"


@dataclass(frozen=True)
class RankedViews:
    """Top and least views over one bucket set."""

    top: list[AggregateBucket]
    least: list[AggregateBucket]


def rank(buckets: Sequence[AggregateBucket], field: str = "total_amount") -> list[AggregateBucket]:
    """Canonical ordering: `field` descending, ties broken by key ascending."""
    if field not in RANK_FIELDS:
        raise ValueError(f"Cannot rank by {field!r}; expected one of {', '.join(RANK_FIELDS)}")
    if not buckets:
        return []

    frame = pd.DataFrame(
        {
            "position": range(len(buckets)),
            "key": [str(b.key) for b in buckets],
            "value": [getattr(b, field) for b in buckets],
        }
    )
    # mergesort is stable, so buckets equal on (value, key) keep input order
    ordered = frame.sort_values(
        ["value", "key"], ascending=[False, True], kind="mergesort"
    )
    return [buckets[i] for i in ordered["position"]]


def select(
    buckets: Sequence[AggregateBucket],
    n: int,
    field: str = "total_amount",
    direction: Direction = Direction.TOP,
) -> list[AggregateBucket]:
    """
    Return the first `n` buckets in the requested direction.

    LEAST walks the canonical order backwards, so ties there break by key
    descending. That keeps top and least views of one set disjoint.
    """
    if n < 0:
        raise ValueError("n must be non-negative")
    ordered = rank(buckets, field)
    if direction is Direction.LEAST:
        ordered.reverse()
    return ordered[:n]


def top_n(buckets: Sequence[AggregateBucket], n: int, field: str = "total_amount") -> list[AggregateBucket]:
    return select(buckets, n, field, Direction.TOP)


def least_n(buckets: Sequence[AggregateBucket], n: int, field: str = "total_amount") -> list[AggregateBucket]:
    return select(buckets, n, field, Direction.LEAST)


def top_and_least(
    buckets: Sequence[AggregateBucket],
    n: int,
    field: str = "total_amount",
) -> RankedViews:
    """Both views from a single sort, as the analytics pages show them side by side."""
    if n < 0:
        raise ValueError("n must be non-negative")
    ordered = rank(buckets, field)
    return RankedViews(top=ordered[:n], least=ordered[::-1][:n])
