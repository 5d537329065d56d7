"""Shared fixtures: record factories, a controllable clock and sample data."""

from datetime import datetime, timezone

import pytest

from analytics import Customer, LineItem, LocalizedName, RecordKind, TransactionRecord
from livesync import CacheSynchronizer


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def line(product_id, quantity=1, unit_price=10.0, department_id=None, name=None, name_en=None):
    return LineItem(
        product_id=product_id,
        product_name=LocalizedName(ar=name, en=name_en),
        quantity=quantity,
        unit_price=unit_price,
        department_id=department_id,
    )


def record(
    record_id,
    branch="A",
    amount=None,
    lines=(),
    when=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
    kind=RecordKind.SALE,
    customer=None,
    status=None,
):
    lines = tuple(lines)
    if amount is None:
        amount = sum(item.line_total for item in lines)
    return TransactionRecord(
        id=record_id,
        kind=kind,
        branch_id=branch,
        occurred_at=when,
        amount=float(amount),
        line_items=lines,
        customer=customer,
        status=status,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheSynchronizer(default_ttl=300, clock=clock)


@pytest.fixture
def branch_records():
    """Three sales across two branches: A has 100 + 50, B has 30."""
    return [
        record("s1", branch="A", amount=100),
        record("s2", branch="A", amount=50),
        record("s3", branch="B", amount=30),
    ]


@pytest.fixture
def mixed_records():
    """Sales with lines across products, departments and customers."""
    return [
        record(
            "s1",
            branch="A",
            lines=[line("p1", 2, 10.0, "d1", "خبز"), line("p2", 1, 5.0, "d2", "كعك", "Cake")],
            customer=Customer(name="Sara", phone="0500000001"),
        ),
        record(
            "s2",
            branch="B",
            amount=40.0,
            lines=[line("p1", 1, 10.0, "d1"), line(None, 1, 20.0)],
            when=datetime(2025, 1, 2, 9, 30, tzinfo=timezone.utc),
        ),
        record(
            "s3",
            branch="A",
            amount=12.5,
            when=datetime(2025, 1, 3, 18, 0, tzinfo=timezone.utc),
            customer=Customer(name="Omar"),
        ),
    ]
