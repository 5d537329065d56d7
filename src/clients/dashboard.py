"""
Read path for the dashboard pages.

Every view goes through the same steps:
1. fingerprint the query and read raw records through the CacheSynchronizer
2. normalize them into TransactionRecords (once per fetch, cached)
3. apply branch / department / product-search / date filters to the records
4. re-derive aggregates, rankings and day trends from the filtered records

Filters are never applied to already-aggregated rows, so bucket totals always
add up to the filtered record set.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable
import asyncio
import logging

from analytics import (
    UNKNOWN_KEY,
    AggregateBucket,
    Dimension,
    ExportTable,
    NameIndex,
    NormalizedBatch,
    RankedViews,
    RecordKind,
    RecordNormalizer,
    TransactionRecord,
    TrendPoint,
    ComparisonPoint,
    ValueField,
    aggregate,
    buckets_from_rollup,
    bucket_by_day,
    buckets_table,
    compare_series,
    compute_totals,
    filter_records,
    return_rate,
    top_and_least,
    top_n,
    trend_table,
)
from livesync import CacheSynchronizer, InventorySnapshot, make_fingerprint, read_inventory

from .backend_client import BackendClient, QueryFilters
from .settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30

# Server rollup keys in the /sales/analytics response, by dimension
ROLLUP_SECTIONS = {
    Dimension.PRODUCT: "productSales",
    Dimension.BRANCH: "branchSales",
    Dimension.DEPARTMENT: "departmentSales",
    Dimension.CUSTOMER: "topCustomers",
}


@dataclass
class SalesView:
    totals: dict
    by_branch: RankedViews
    by_product: RankedViews
    by_department: RankedViews
    top_customers: list[AggregateBucket]
    trend: list[TrendPoint]
    names: NameIndex
    rejected: int = 0


@dataclass
class OrdersView:
    totals: dict
    by_branch: RankedViews
    by_product: RankedViews
    trend: list[TrendPoint]
    names: NameIndex
    rejected: int = 0


@dataclass
class ReturnsView:
    totals: dict
    by_branch: RankedViews
    by_product: RankedViews
    trend: list[TrendPoint]
    names: NameIndex
    status_counts: dict[str, int] = field(default_factory=dict)
    rejected: int = 0


@dataclass
class ComparisonView:
    points: list[ComparisonPoint]
    return_rate: float


@dataclass
class ServerAnalyticsView:
    """Rankings built from the backend's own rollups (already filtered server side)."""

    rankings: dict[Dimension, RankedViews]
    names: NameIndex


class DashboardLoader:
    """
    Builds page views from cached backend reads.

    Usage:
        loader = DashboardLoader(client, CacheSynchronizer())
        view = await loader.sales_view(QueryFilters(branch="b1"))
        view.by_product.top  # ranked AggregateBuckets
    """

    def __init__(
        self,
        client: BackendClient,
        cache: CacheSynchronizer,
        settings: Settings | None = None,
    ):
        self.client = client
        self.cache = cache
        self.settings = settings or client.settings
        self.names = NameIndex()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _with_range(self, filters: QueryFilters | None) -> QueryFilters:
        """Fill in a default date range (the last DEFAULT_RANGE_DAYS days)."""
        filters = filters or QueryFilters()
        end = filters.end_date or datetime.now(self.settings.tz).date()
        start = filters.start_date or end - timedelta(days=DEFAULT_RANGE_DAYS - 1)
        return replace(filters, start_date=start, end_date=end)

    async def _read_batch(
        self,
        resource: str,
        kind: RecordKind,
        fetch: Callable[[QueryFilters], Awaitable[list[dict]]],
        filters: QueryFilters,
    ) -> NormalizedBatch:
        fingerprint = make_fingerprint(resource, filters.fingerprint_filters())

        async def fetcher() -> NormalizedBatch:
            rows = await fetch(filters)
            batch = RecordNormalizer(self.names).normalize_many(rows, kind)
            logger.debug("Loaded %d %s records for %s", len(batch.records), kind.value, fingerprint)
            return batch

        batch = await self.cache.read(fingerprint, fetcher, self.settings.cache_ttl_seconds)
        # A cache hit may carry names collected by another loader
        if batch.names is not self.names:
            self.names.update(batch.names)
        return batch

    def _filtered(self, batch: NormalizedBatch, filters: QueryFilters) -> list[TransactionRecord]:
        return filter_records(
            batch.records,
            branch_id=filters.branch,
            department_id=filters.department,
            product_search=filters.product_search,
            start=filters.start_date,
            end=filters.end_date,
            tz=self.settings.tz,
        )

    def _ranked(
        self,
        records: list[TransactionRecord],
        dimension: Dimension,
        value: ValueField,
    ) -> RankedViews:
        buckets = aggregate(records, dimension, value)
        return top_and_least(buckets, self.settings.ranking_size, _rank_field(value))

    def _trend(self, records: list[TransactionRecord], filters: QueryFilters, value: ValueField) -> list[TrendPoint]:
        return bucket_by_day(records, filters.start_date, filters.end_date, value, self.settings.tz)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    async def sales_view(
        self,
        filters: QueryFilters | None = None,
        value: ValueField = ValueField.AMOUNT,
    ) -> SalesView:
        filters = self._with_range(filters)
        batch = await self._read_batch("sales", RecordKind.SALE, self.client.get_sales, filters)
        records = self._filtered(batch, filters)

        customers = [
            b for b in aggregate(records, Dimension.CUSTOMER, value) if b.key != UNKNOWN_KEY
        ]
        return SalesView(
            totals=compute_totals(records),
            by_branch=self._ranked(records, Dimension.BRANCH, value),
            by_product=self._ranked(records, Dimension.PRODUCT, value),
            by_department=self._ranked(records, Dimension.DEPARTMENT, value),
            top_customers=top_n(customers, self.settings.ranking_size, _rank_field(value)),
            trend=self._trend(records, filters, value),
            names=self.names,
            rejected=len(batch.rejected),
        )

    async def orders_view(
        self,
        filters: QueryFilters | None = None,
        value: ValueField = ValueField.AMOUNT,
    ) -> OrdersView:
        filters = self._with_range(filters)
        batch = await self._read_batch("orders", RecordKind.ORDER, self.client.get_orders, filters)
        records = self._filtered(batch, filters)
        return OrdersView(
            totals=compute_totals(records),
            by_branch=self._ranked(records, Dimension.BRANCH, value),
            by_product=self._ranked(records, Dimension.PRODUCT, value),
            trend=self._trend(records, filters, value),
            names=self.names,
            rejected=len(batch.rejected),
        )

    async def returns_view(
        self,
        filters: QueryFilters | None = None,
        value: ValueField = ValueField.AMOUNT,
    ) -> ReturnsView:
        filters = self._with_range(filters)
        batch = await self._read_batch("returns", RecordKind.RETURN, self.client.get_returns, filters)
        records = self._filtered(batch, filters)

        status_counts: dict[str, int] = {}
        for record in records:
            status = record.status or "pending"
            status_counts[status] = status_counts.get(status, 0) + 1

        return ReturnsView(
            totals=compute_totals(records),
            by_branch=self._ranked(records, Dimension.BRANCH, value),
            by_product=self._ranked(records, Dimension.PRODUCT, value),
            trend=self._trend(records, filters, value),
            names=self.names,
            status_counts=status_counts,
            rejected=len(batch.rejected),
        )

    async def orders_vs_returns(self, filters: QueryFilters | None = None) -> ComparisonView:
        filters = self._with_range(filters)
        orders, returns = await asyncio.gather(
            self._read_batch("orders", RecordKind.ORDER, self.client.get_orders, filters),
            self._read_batch("returns", RecordKind.RETURN, self.client.get_returns, filters),
        )
        order_records = self._filtered(orders, filters)
        return_records = self._filtered(returns, filters)
        return ComparisonView(
            points=compare_series(
                order_records, return_records, filters.start_date, filters.end_date, self.settings.tz
            ),
            return_rate=return_rate(return_records, order_records),
        )

    async def server_analytics(
        self,
        filters: QueryFilters | None = None,
        value: ValueField = ValueField.AMOUNT,
    ) -> ServerAnalyticsView:
        """
        Rankings from the backend's pre-aggregated rollups.

        Rows are merged per key before ranking, so paged or repeated rollup
        rows behave like client-side aggregates.
        """
        filters = self._with_range(filters)
        fingerprint = make_fingerprint(
            "sales-analytics",
            {
                **filters.fingerprint_filters(),
                "department": filters.department,
                "search": filters.product_search,
            },
        )
        body = await self.cache.read(
            fingerprint,
            lambda: self.client.get_sales_analytics(filters),
            self.settings.cache_ttl_seconds,
        )

        rankings = {}
        for dimension, section in ROLLUP_SECTIONS.items():
            buckets = buckets_from_rollup(body.get(section) or [], dimension, self.names, value)
            rankings[dimension] = top_and_least(buckets, self.settings.ranking_size, _rank_field(value))
        return ServerAnalyticsView(rankings=rankings, names=self.names)

    async def inventory(self, branch_id: str) -> InventorySnapshot:
        return await read_inventory(
            self.cache, self.client.get_inventory, branch_id, self.settings.inventory_ttl_seconds
        )

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def sales_export(self, view: SalesView, language: str | None = None) -> list[ExportTable]:
        """Tables for the export sink, in the order the page shows them."""
        language = language or self.settings.language
        english = language == "en"
        return [
            buckets_table(
                "Top products" if english else "المنتجات الأكثر مبيعًا",
                view.by_product.top, Dimension.PRODUCT, view.names, language,
            ),
            buckets_table(
                "Least products" if english else "المنتجات الأقل مبيعًا",
                view.by_product.least, Dimension.PRODUCT, view.names, language,
            ),
            buckets_table(
                "Branches" if english else "الفروع",
                view.by_branch.top, Dimension.BRANCH, view.names, language,
            ),
            buckets_table(
                "Departments" if english else "الأقسام",
                view.by_department.top, Dimension.DEPARTMENT, view.names, language,
            ),
            trend_table("Sales trend" if english else "اتجاه المبيعات", view.trend, language),
        ]


def _rank_field(value: ValueField) -> str:
    return "total_amount" if value is ValueField.AMOUNT else "total_quantity"
