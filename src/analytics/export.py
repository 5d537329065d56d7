"""
Tabular rows handed to the export sink (CSV / Excel / PDF writers).

Rows are emitted already deduplicated and in display order; the writers on
the other side only lay them out.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable
import pandas as pd

from .aggregation import AggregateBucket
from .records import Dimension, NameIndex
from .trends import TrendPoint

COLUMN_LABELS = {
    "ar": {
        "name": "الاسم",
        "count": "العدد",
        "total_amount": "الإجمالي",
        "total_quantity": "الكمية",
        "average": "المتوسط",
        "period": "الفترة",
    },
    "en": {
        "name": "Name",
        "count": "Count",
        "total_amount": "Total",
        "total_quantity": "Quantity",
        "average": "Average",
        "period": "Period",
    },
}


@dataclass(frozen=True)
class Column:
    key: str
    label: str


@dataclass
class ExportTable:
    title: str
    columns: list[Column]
    rows: list[dict] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.rows, columns=[c.key for c in self.columns])
        return frame.rename(columns={c.key: c.label for c in self.columns})

    def to_csv(self, path: Path | str | None = None) -> str | None:
        """Write to `path`, or return the CSV text when no path is given."""
        return self.to_frame().to_csv(path, index=False)

    def to_excel(self, path: Path | str) -> None:
        self.to_frame().to_excel(path, index=False, sheet_name=self.title[:31] or "Sheet1")


def _labels(language: str) -> dict:
    return COLUMN_LABELS.get(language, COLUMN_LABELS["en"])


def buckets_table(
    title: str,
    buckets: Iterable[AggregateBucket],
    dimension: Dimension,
    names: NameIndex,
    language: str = "ar",
) -> ExportTable:
    """Ranked buckets as export rows. Keeps the given order; drops repeated keys."""
    labels = _labels(language)
    columns = [
        Column(key, labels[key])
        for key in ("name", "count", "total_amount", "total_quantity", "average")
    ]

    seen = set()
    rows = []
    for bucket in buckets:
        if bucket.key in seen:
            continue
        seen.add(bucket.key)
        rows.append(
            {
                "name": names.resolve(dimension, bucket.key, language),
                "count": bucket.count,
                "total_amount": round(bucket.total_amount, 2),
                "total_quantity": round(bucket.total_quantity, 2),
                "average": round(bucket.average, 2),
            }
        )
    return ExportTable(title=title, columns=columns, rows=rows)


def trend_table(title: str, points: Iterable[TrendPoint], language: str = "ar") -> ExportTable:
    """Trend points as export rows, one per day, chronological."""
    labels = _labels(language)
    columns = [Column(key, labels[key]) for key in ("period", "count", "total_amount", "total_quantity")]
    ordered = sorted({p.period_label: p for p in points}.values(), key=lambda p: p.day)
    rows = [
        {
            "period": p.period_label,
            "count": p.count,
            "total_amount": round(p.total_amount, 2),
            "total_quantity": round(p.total_quantity, 2),
        }
        for p in ordered
    ]
    return ExportTable(title=title, columns=columns, rows=rows)
