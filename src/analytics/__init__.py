# Reusable analytics core for branch operations data
# Normalizes sales/orders/returns and derives rollups, rankings and trends

from .records import (
    Customer,
    Dimension,
    LineItem,
    LocalizedName,
    MalformedRecord,
    NameIndex,
    NormalizedBatch,
    RecordKind,
    RecordNormalizer,
    TransactionRecord,
    ValueField,
    filter_records,
)
from .aggregation import (
    UNKNOWN_KEY,
    AggregateBucket,
    aggregate,
    buckets_from_rollup,
    compute_totals,
    merge_buckets,
    return_rate,
)
from .ranking import Direction, RankedViews, least_n, rank, select, top_and_least, top_n
from .trends import (
    ComparisonPoint,
    InvalidDateRange,
    TrendPoint,
    bucket_by_day,
    compare_series,
    day_range,
)
from .export import Column, ExportTable, buckets_table, trend_table

__all__ = [
    "Customer",
    "Dimension",
    "LineItem",
    "LocalizedName",
    "MalformedRecord",
    "NameIndex",
    "NormalizedBatch",
    "RecordKind",
    "RecordNormalizer",
    "TransactionRecord",
    "ValueField",
    "filter_records",
    "UNKNOWN_KEY",
    "AggregateBucket",
    "aggregate",
    "buckets_from_rollup",
    "compute_totals",
    "merge_buckets",
    "return_rate",
    "Direction",
    "RankedViews",
    "least_n",
    "rank",
    "select",
    "top_and_least",
    "top_n",
    "ComparisonPoint",
    "InvalidDateRange",
    "TrendPoint",
    "bucket_by_day",
    "compare_series",
    "day_range",
    "Column",
    "ExportTable",
    "buckets_table",
    "trend_table",
]
