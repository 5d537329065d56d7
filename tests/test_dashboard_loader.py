"""Tests for the dashboard read path: cached reads, filters and page views."""

import asyncio
from datetime import date

import pytest

from analytics import AggregateBucket, Dimension
from clients import DashboardLoader, QueryFilters, Settings
from livesync import CacheStatus, make_fingerprint, match_resource


SALES = [
    {
        "_id": "s1",
        "saleNumber": "S-1",
        "branch": {"_id": "b1", "name": "الفرع الأول", "nameEn": "First Branch"},
        "items": [
            {
                "product": {
                    "_id": "p1",
                    "name": "خبز",
                    "nameEn": "Bread",
                    "department": {"_id": "d1", "name": "مخبوزات", "nameEn": "Bakery"},
                },
                "quantity": 2,
                "unitPrice": 10,
            },
            {"product": {"_id": "p2", "name": "كعك", "nameEn": "Cake", "department": "d2"}, "quantity": 1, "unitPrice": 5},
        ],
        "totalAmount": 25,
        "createdAt": "2025-01-01T10:00:00Z",
        "customerName": "Sara",
        "customerPhone": "0500000001",
    },
    {
        "_id": "s2",
        "branchId": "b2",
        "items": [{"productId": "p1", "quantity": 3, "unitPrice": 10, "departmentId": "d1"}],
        "totalAmount": 30,
        "createdAt": "2025-01-02T10:00:00Z",
    },
    {"_id": "s3", "branch": "b1", "totalAmount": 7, "createdAt": "2025-01-02T11:00:00Z"},
    {"_id": "broken"},
]

ORDERS = [
    {"_id": "o1", "branch": "b1", "totalAmount": 100, "createdAt": "2025-01-01T08:00:00Z"},
    {"_id": "o2", "branch": "b1", "totalAmount": 50, "createdAt": "2025-01-02T08:00:00Z"},
]

RETURNS = [
    {"_id": "r1", "branch": "b1", "totalAmount": 10, "status": "approved", "createdAt": "2025-01-01T12:00:00Z"},
    {"_id": "r2", "branch": "b1", "totalAmount": 5, "createdAt": "2025-01-02T12:00:00Z"},
]

ANALYTICS = {
    "productSales": [
        {"productId": "p1", "productName": "خبز", "productNameEn": "Bread", "totalRevenue": 50, "totalQuantity": 5, "saleCount": 2},
        {"productId": "p1", "totalRevenue": 10, "totalQuantity": 1, "saleCount": 1},
        {"productId": "p2", "totalRevenue": 5, "totalQuantity": 1, "saleCount": 1},
    ],
    "branchSales": [{"branchId": "b1", "branchName": "الفرع الأول", "totalSales": 32, "saleCount": 2}],
}

JANUARY = QueryFilters(start_date=date(2025, 1, 1), end_date=date(2025, 1, 3))


class FakeBackend:
    """Duck-typed BackendClient serving canned payloads and counting reads."""

    def __init__(self, settings):
        self.settings = settings
        self.calls = {}
        self.seen_filters = []

    def _count(self, name, filters=None):
        self.calls[name] = self.calls.get(name, 0) + 1
        self.seen_filters.append(filters)

    async def get_sales(self, filters=None):
        self._count("sales", filters)
        return SALES

    async def get_orders(self, filters=None):
        self._count("orders", filters)
        return ORDERS

    async def get_returns(self, filters=None):
        self._count("returns", filters)
        return RETURNS

    async def get_sales_analytics(self, filters=None):
        self._count("sales-analytics", filters)
        return ANALYTICS

    async def get_inventory(self, branch_id):
        self._count("inventory")
        return [{"product": {"_id": "p1", "name": "خبز"}, "currentStock": 8}]


@pytest.fixture
def settings():
    return Settings(timezone="UTC", ranking_size=2, language="en")


@pytest.fixture
def backend(settings):
    return FakeBackend(settings)


@pytest.fixture
def loader(backend, cache, settings):
    return DashboardLoader(backend, cache, settings)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_sales_view_totals_and_rankings(loader):
    view = asyncio.run(loader.sales_view(JANUARY))

    assert view.totals["count"] == 3
    assert view.totals["total_amount"] == pytest.approx(62.0)
    assert view.rejected == 1

    assert [b.key for b in view.by_branch.top] == ["b1", "b2"]
    assert [b.key for b in view.by_product.top] == ["p1", "unknown"]
    assert [b.key for b in view.by_product.least] == ["p2", "unknown"]
    assert [b.key for b in view.top_customers] == ["0500000001"]

    assert [p.value for p in view.trend] == [25.0, 37.0, 0.0]
    assert view.names.resolve(Dimension.BRANCH, "b1", "en") == "First Branch"
    assert view.names.resolve(Dimension.DEPARTMENT, "d1", "ar") == "مخبوزات"


def test_department_filter_narrows_records_before_aggregating(loader):
    filters = QueryFilters(department="d1", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3))
    view = asyncio.run(loader.sales_view(filters))

    assert view.totals["total_amount"] == pytest.approx(50.0)
    assert [(b.key, b.total_amount) for b in view.by_branch.top] == [("b2", 30.0), ("b1", 20.0)]
    assert [b.key for b in view.by_department.top] == ["d1"]
    assert [(b.key, b.total_amount) for b in view.by_product.top] == [("p1", 50.0)]


def test_product_search_matches_either_language(loader):
    filters = QueryFilters(product_search="cake", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3))
    view = asyncio.run(loader.sales_view(filters))

    assert view.totals["total_amount"] == pytest.approx(5.0)
    assert [b.key for b in view.by_product.top] == ["p2"]


def test_filters_applied_locally_share_one_backend_read(loader, backend):
    async def main():
        await loader.sales_view(JANUARY)
        await loader.sales_view(QueryFilters(department="d1", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3)))
        await loader.sales_view(QueryFilters(product_search="bread", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3)))

    asyncio.run(main())
    assert backend.calls == {"sales": 1}


def test_branch_filter_is_sent_and_cached_separately(loader, backend, cache):
    async def main():
        await loader.sales_view(JANUARY)
        return await loader.sales_view(
            QueryFilters(branch="b2", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3))
        )

    view = asyncio.run(main())
    assert backend.calls == {"sales": 2}
    assert backend.seen_filters[-1].branch == "b2"
    assert view.totals["total_amount"] == pytest.approx(30.0)
    assert len(cache) == 2


def test_invalidation_triggers_a_new_read(loader, backend, cache):
    async def main():
        await loader.sales_view(JANUARY)
        cache.invalidate(match_resource("sales"))
        await loader.sales_view(JANUARY)

    asyncio.run(main())
    assert backend.calls == {"sales": 2}


def test_default_range_covers_the_last_thirty_days(loader, backend):
    view = asyncio.run(loader.sales_view())

    filters = backend.seen_filters[0]
    assert (filters.end_date - filters.start_date).days == 29
    assert len(view.trend) == 30


def test_sales_export_tables(loader):
    view = asyncio.run(loader.sales_view(JANUARY))
    tables = loader.sales_export(view)

    assert [t.title for t in tables] == [
        "Top products",
        "Least products",
        "Branches",
        "Departments",
        "Sales trend",
    ]
    assert [row["name"] for row in tables[0].rows] == ["Bread", "Deleted Product"]
    assert len(tables[-1].rows) == 3

    arabic = loader.sales_export(view, language="ar")
    assert arabic[0].rows[0]["name"] == "خبز"


# ---------------------------------------------------------------------------
# Orders and returns
# ---------------------------------------------------------------------------


def test_returns_view_counts_statuses(loader):
    view = asyncio.run(loader.returns_view(JANUARY))
    assert view.status_counts == {"approved": 1, "pending": 1}
    assert view.totals["total_amount"] == pytest.approx(15.0)


def test_orders_vs_returns(loader, backend):
    comparison = asyncio.run(loader.orders_vs_returns(JANUARY))

    assert comparison.return_rate == pytest.approx(15 / 150)
    assert [p.return_ratio for p in comparison.points] == pytest.approx([0.1, 0.1, 0.0])
    assert backend.calls == {"orders": 1, "returns": 1}


def test_orders_view(loader):
    view = asyncio.run(loader.orders_view(JANUARY))
    assert view.totals["count"] == 2
    assert [b.key for b in view.by_branch.top] == ["b1"]


# ---------------------------------------------------------------------------
# Server rollups and inventory
# ---------------------------------------------------------------------------


def test_server_analytics_merges_rollup_rows(loader, backend):
    view = asyncio.run(loader.server_analytics(JANUARY))

    products = view.rankings[Dimension.PRODUCT]
    assert products.top[0] == AggregateBucket("p1", 3, 60.0, 6.0, 20.0)
    assert [b.key for b in products.least] == ["p2", "p1"]
    assert view.rankings[Dimension.DEPARTMENT].top == []
    assert view.names.resolve(Dimension.PRODUCT, "p1", "en") == "Bread"
    assert backend.calls == {"sales-analytics": 1}


def test_server_analytics_fingerprint_includes_department(loader, backend):
    async def main():
        await loader.server_analytics(JANUARY)
        await loader.server_analytics(
            QueryFilters(department="d1", start_date=date(2025, 1, 1), end_date=date(2025, 1, 3))
        )

    asyncio.run(main())
    assert backend.calls == {"sales-analytics": 2}


def test_inventory_is_cached_per_branch(loader, backend, cache):
    async def main():
        first = await loader.inventory("b1")
        second = await loader.inventory("b1")
        return first, second

    first, second = asyncio.run(main())
    assert first.available("p1") == 8
    assert second is first
    assert backend.calls == {"inventory": 1}
    assert cache.peek(make_fingerprint("inventory", {"branch": "b1"})).status is CacheStatus.FRESH


def test_loader_on_a_warm_cache_still_resolves_names(backend, cache, settings):
    async def main():
        await DashboardLoader(backend, cache, settings).sales_view(JANUARY)
        return await DashboardLoader(backend, cache, settings).sales_view(JANUARY)

    view = asyncio.run(main())
    assert backend.calls == {"sales": 1}
    assert view.names.resolve(Dimension.PRODUCT, "p1", "en") == "Bread"
    assert view.names.resolve(Dimension.BRANCH, "b1", "en") == "First Branch"
