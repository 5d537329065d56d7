"""
Canonical transaction records and the normalizer that produces them.

The backend returns sales, orders and returns in slightly different shapes:
- ids as `_id` or `id`
- branch embedded as an object or flattened into branchId/branchName
- products embedded in line items or referenced by id only
- Arabic names with optional English translations (`name` / `nameEn`)

RecordNormalizer turns all of them into one immutable TransactionRecord so
aggregation and trend code never has to care where a record came from.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Annotated, Any, Iterable
import logging

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
)

logger = logging.getLogger(__name__)


class RecordKind(Enum):
    """Which transactional stream a record came from."""

    SALE = "sale"
    ORDER = "order"
    RETURN = "return"


class Dimension(Enum):
    """Grouping axis for an aggregation request."""

    BRANCH = "branch"
    PRODUCT = "product"
    DEPARTMENT = "department"
    CUSTOMER = "customer"


class ValueField(Enum):
    """Which value an aggregate or trend is measured in."""

    AMOUNT = "amount"
    QUANTITY = "quantity"


# Shown when a referenced entity has been deleted or never had a name
PLACEHOLDER_NAMES = {
    Dimension.BRANCH: ("فرع غير معروف", "Unknown Branch"),
    Dimension.PRODUCT: ("منتج محذوف", "Deleted Product"),
    Dimension.DEPARTMENT: ("قسم غير معروف", "Unknown Department"),
    Dimension.CUSTOMER: ("عميل غير معروف", "Unknown Customer"),
}


@dataclass(frozen=True)
class LocalizedName:
    """An Arabic name with an optional English translation."""

    ar: str | None = None
    en: str | None = None

    def display(self, language: str = "ar") -> str | None:
        if language == "ar":
            return self.ar or self.en
        return self.en or self.ar

    def matches(self, term: str) -> bool:
        """Case-insensitive substring match against either translation."""
        term = term.strip().lower()
        return any(term in name.lower() for name in (self.ar, self.en) if name)

    def __bool__(self) -> bool:
        return bool(self.ar or self.en)


@dataclass(frozen=True)
class Customer:
    name: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class LineItem:
    product_id: str | None
    product_name: LocalizedName
    quantity: float
    unit_price: float
    department_id: str | None = None
    department_name: LocalizedName = field(default_factory=LocalizedName)

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class TransactionRecord:
    """One sale, order or return, normalized. Never mutated after creation."""

    id: str
    kind: RecordKind
    branch_id: str | None
    occurred_at: datetime
    amount: float
    line_items: tuple[LineItem, ...] = ()
    customer: Customer | None = None
    branch_name: LocalizedName = field(default_factory=LocalizedName)
    number: str | None = None
    status: str | None = None

    @property
    def total_quantity(self) -> float:
        return sum(item.quantity for item in self.line_items)

    @property
    def line_total(self) -> float:
        return sum(item.line_total for item in self.line_items)

    def day(self, tz: tzinfo | None = None) -> date:
        """Calendar day of the record, in `tz` when the timestamp is aware."""
        moment = self.occurred_at
        if tz is not None and moment.tzinfo is not None:
            moment = moment.astimezone(tz)
        return moment.date()


class MalformedRecord(ValueError):
    """Raised when a wire record cannot be turned into a TransactionRecord."""


# =============================================================================
# WIRE MODELS
# =============================================================================


def _coerce_id(value: Any) -> Any:
    # Mongo ids arrive as strings, but fixtures and older endpoints send ints
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


WireId = Annotated[str, BeforeValidator(_coerce_id)]


class WireRef(BaseModel):
    """An embedded reference such as `{_id, name, nameEn}`."""

    model_config = ConfigDict(extra="ignore")

    id: WireId | None = Field(default=None, validation_alias=AliasChoices("_id", "id"))
    name: str | None = None
    name_en: str | None = Field(
        default=None, validation_alias=AliasChoices("nameEn", "name_en")
    )

    def localized(self) -> LocalizedName:
        return LocalizedName(ar=self.name, en=self.name_en)


class WireProduct(WireRef):
    department: Annotated[WireRef | str | None, BeforeValidator(_coerce_id)] = None


class WireLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product: Annotated[WireProduct | str | None, BeforeValidator(_coerce_id)] = None
    product_id: WireId | None = Field(
        default=None, validation_alias=AliasChoices("productId", "product_id")
    )
    product_name: str | None = Field(
        default=None, validation_alias=AliasChoices("productName", "product_name")
    )
    product_name_en: str | None = Field(
        default=None, validation_alias=AliasChoices("productNameEn", "product_name_en")
    )
    quantity: float = 0
    unit_price: float | None = Field(
        default=None, validation_alias=AliasChoices("unitPrice", "price", "unit_price")
    )
    department: Annotated[WireRef | str | None, BeforeValidator(_coerce_id)] = None
    department_id: WireId | None = Field(
        default=None, validation_alias=AliasChoices("departmentId", "department_id")
    )


class WireRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: WireId = Field(validation_alias=AliasChoices("_id", "id"))
    number: WireId | None = Field(
        default=None,
        validation_alias=AliasChoices("saleNumber", "orderNumber", "returnNumber", "number"),
    )
    branch: Annotated[WireRef | str | None, BeforeValidator(_coerce_id)] = None
    branch_id: WireId | None = Field(
        default=None, validation_alias=AliasChoices("branchId", "branch_id")
    )
    branch_name: str | None = Field(
        default=None, validation_alias=AliasChoices("branchName", "branch_name")
    )
    branch_name_en: str | None = Field(
        default=None, validation_alias=AliasChoices("branchNameEn", "branch_name_en")
    )
    items: list[WireLineItem] = Field(default_factory=list)
    total_amount: float | None = Field(
        default=None, validation_alias=AliasChoices("totalAmount", "total", "amount")
    )
    occurred_at: datetime = Field(
        validation_alias=AliasChoices("createdAt", "date", "saleDate", "occurredAt", "occurred_at")
    )
    customer_name: str | None = Field(
        default=None, validation_alias=AliasChoices("customerName", "customer_name")
    )
    customer_phone: WireId | None = Field(
        default=None, validation_alias=AliasChoices("customerPhone", "customer_phone")
    )
    status: str | None = None


# =============================================================================
# NORMALIZER
# =============================================================================


@dataclass
class NormalizedBatch:
    """Records produced from one wire payload, plus the ones that were rejected."""

    records: tuple[TransactionRecord, ...]
    names: "NameIndex"
    rejected: list[dict] = field(default_factory=list)


class NameIndex:
    """
    Localized display names keyed by (dimension, key).

    Buckets carry ids only; names are looked up here at presentation time so
    a language switch never requires re-aggregating.
    """

    def __init__(self):
        self._names: dict[tuple[Dimension, str], LocalizedName] = {}

    def add(self, dimension: Dimension, key: str | None, name: LocalizedName) -> None:
        if key is None or not name:
            return
        # First non-empty name wins; later records may carry partial translations
        current = self._names.get((dimension, key))
        if current is None:
            self._names[(dimension, key)] = name
        elif not (current.ar and current.en):
            self._names[(dimension, key)] = LocalizedName(
                ar=current.ar or name.ar, en=current.en or name.en
            )

    def get(self, dimension: Dimension, key: str) -> LocalizedName | None:
        return self._names.get((dimension, key))

    def resolve(self, dimension: Dimension, key: str, language: str = "ar") -> str:
        name = self._names.get((dimension, key))
        if name:
            return name.display(language)
        ar, en = PLACEHOLDER_NAMES[dimension]
        return ar if language == "ar" else en

    def update(self, other: "NameIndex") -> "NameIndex":
        for (dimension, key), name in other._names.items():
            self.add(dimension, key, name)
        return self

    def __len__(self) -> int:
        return len(self._names)


class RecordNormalizer:
    """
    Converts heterogeneous wire records into canonical TransactionRecords.

    Every record passes through `normalize` exactly once; the resulting
    records are immutable, and localized names are collected into a
    NameIndex as a side product.

    Usage:
        normalizer = RecordNormalizer()
        batch = normalizer.normalize_many(payload["sales"], RecordKind.SALE)
        buckets = aggregate(batch.records, Dimension.PRODUCT)
    """

    def __init__(self, names: NameIndex | None = None):
        self.names = names if names is not None else NameIndex()

    def normalize(self, raw: dict, kind: RecordKind) -> TransactionRecord:
        """Normalize a single wire record. Raises MalformedRecord."""
        try:
            wire = WireRecord.model_validate(raw)
        except PydanticValidationError as exc:
            raise MalformedRecord(f"Invalid {kind.value} record: {exc.error_count()} errors") from exc

        branch_id, branch_name = self._branch(wire)
        items = tuple(self._line_item(item) for item in wire.items)

        amount = wire.total_amount
        if amount is None:
            amount = sum(item.line_total for item in items)

        customer = None
        if wire.customer_name or wire.customer_phone:
            customer = Customer(name=wire.customer_name, phone=wire.customer_phone)

        record = TransactionRecord(
            id=wire.id,
            kind=kind,
            branch_id=branch_id,
            occurred_at=wire.occurred_at,
            amount=float(amount),
            line_items=items,
            customer=customer,
            branch_name=branch_name,
            number=wire.number,
            status=wire.status,
        )
        self._index(record)
        return record

    def normalize_many(self, raws: Iterable[dict], kind: RecordKind) -> NormalizedBatch:
        """Normalize a payload, setting aside records that fail validation."""
        records = []
        rejected = []
        for raw in raws:
            try:
                records.append(self.normalize(raw, kind))
            except MalformedRecord as exc:
                rejected.append(raw)
                logger.warning("Skipping %s record %r: %s", kind.value, _raw_id(raw), exc)

        if rejected:
            logger.warning(
                "Rejected %d of %d %s records", len(rejected), len(rejected) + len(records), kind.value
            )
        return NormalizedBatch(records=tuple(records), names=self.names, rejected=rejected)

    def _branch(self, wire: WireRecord) -> tuple[str | None, LocalizedName]:
        if isinstance(wire.branch, WireRef):
            name = wire.branch.localized()
            if not name:
                name = LocalizedName(ar=wire.branch_name, en=wire.branch_name_en)
            return wire.branch.id or wire.branch_id, name
        branch_id = wire.branch if isinstance(wire.branch, str) else wire.branch_id
        return branch_id, LocalizedName(ar=wire.branch_name, en=wire.branch_name_en)

    def _line_item(self, item: WireLineItem) -> LineItem:
        product_id = item.product_id
        product_name = LocalizedName(ar=item.product_name, en=item.product_name_en)
        department = item.department

        if isinstance(item.product, WireProduct):
            product_id = item.product.id or product_id
            if item.product.localized():
                product_name = item.product.localized()
            department = department or item.product.department
        elif isinstance(item.product, str):
            product_id = item.product

        department_id = item.department_id
        department_name = LocalizedName()
        if isinstance(department, WireRef):
            department_id = department.id or department_id
            department_name = department.localized()
        elif isinstance(department, str):
            department_id = department

        return LineItem(
            product_id=product_id,
            product_name=product_name,
            quantity=float(item.quantity),
            unit_price=float(item.unit_price or 0),
            department_id=department_id,
            department_name=department_name,
        )

    def _index(self, record: TransactionRecord) -> None:
        self.names.add(Dimension.BRANCH, record.branch_id, record.branch_name)
        for item in record.line_items:
            self.names.add(Dimension.PRODUCT, item.product_id, item.product_name)
            self.names.add(Dimension.DEPARTMENT, item.department_id, item.department_name)
        if record.customer:
            key = customer_key(record.customer)
            self.names.add(Dimension.CUSTOMER, key, LocalizedName(ar=record.customer.name))


def _raw_id(raw: Any) -> Any:
    if isinstance(raw, dict):
        return raw.get("_id") or raw.get("id")
    return None


def customer_key(customer: Customer | None) -> str | None:
    """Customers are keyed by phone when known, otherwise by name."""
    if customer is None:
        return None
    return customer.phone or customer.name or None


# =============================================================================
# FILTERING
# =============================================================================


def filter_records(
    records: Iterable[TransactionRecord],
    branch_id: str | None = None,
    department_id: str | None = None,
    product_search: str | None = None,
    start: date | None = None,
    end: date | None = None,
    tz: tzinfo | None = None,
) -> list[TransactionRecord]:
    """
    Filter raw records before aggregation.

    Department and product filters narrow each record to its matching line
    items and recompute the record amount from those lines, so totals
    aggregated afterwards still add up to the filtered record set. Records
    left with no matching lines are dropped.
    """
    search = (product_search or "").strip()
    narrowing = bool(department_id or search)

    result = []
    for record in records:
        if branch_id and record.branch_id != branch_id:
            continue
        if start or end:
            day = record.day(tz)
            if (start and day < start) or (end and day > end):
                continue

        if narrowing:
            lines = tuple(
                item
                for item in record.line_items
                if (not department_id or item.department_id == department_id)
                and (not search or item.product_name.matches(search))
            )
            if not lines:
                continue
            record = replace(
                record, line_items=lines, amount=sum(item.line_total for item in lines)
            )

        result.append(record)
    return result
