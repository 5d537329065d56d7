"""
Branch inventory snapshots used to bound return quantities.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable
import logging

from .cache import CacheSynchronizer, make_fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InventoryItem:
    product_id: str
    available_quantity: float
    product_name: str | None = None


@dataclass(frozen=True)
class InventorySnapshot:
    """Per-product available quantities for one branch at one point in time."""

    branch_id: str
    items: dict[str, InventoryItem] = field(default_factory=dict)

    def available(self, product_id: str) -> float | None:
        """Available quantity, or None if the product is not stocked by the branch."""
        item = self.items.get(product_id)
        return item.available_quantity if item is not None else None

    def __contains__(self, product_id: str) -> bool:
        return product_id in self.items

    def with_decrements(self, quantities: dict[str, float]) -> "InventorySnapshot":
        """A new snapshot with `quantities` subtracted (never below zero)."""
        items = dict(self.items)
        for product_id, quantity in quantities.items():
            item = items.get(product_id)
            if item is None:
                continue
            items[product_id] = InventoryItem(
                product_id=product_id,
                available_quantity=max(item.available_quantity - quantity, 0),
                product_name=item.product_name,
            )
        return InventorySnapshot(branch_id=self.branch_id, items=items)

    @classmethod
    def from_wire(cls, branch_id: str, rows: Iterable[dict]) -> "InventorySnapshot":
        """
        Build a snapshot from inventory rows.

        Rows reference the product as an embedded object (`product._id`) or as
        `productId`, and report stock as `currentStock` or `availableQuantity`.
        """
        items = {}
        for row in rows:
            product = row.get("product")
            name = None
            if isinstance(product, dict):
                product_id = product.get("_id") or product.get("id")
                name = product.get("name")
            else:
                product_id = product or row.get("productId")

            if not product_id:
                logger.debug("Skipping inventory row without product: %r", row)
                continue

            stock = row.get("currentStock", row.get("availableQuantity", 0))
            items[str(product_id)] = InventoryItem(
                product_id=str(product_id),
                available_quantity=float(stock or 0),
                product_name=name or row.get("productName"),
            )
        return cls(branch_id=branch_id, items=items)


def inventory_fingerprint(branch_id: str) -> str:
    return make_fingerprint("inventory", {"branch": branch_id})


async def read_inventory(
    cache: CacheSynchronizer,
    fetch: Callable[[str], Awaitable[Any]],
    branch_id: str,
    ttl: float | None = None,
) -> InventorySnapshot:
    """Cached inventory snapshot for a branch; `fetch` returns the wire rows."""

    async def fetcher() -> InventorySnapshot:
        rows = await fetch(branch_id)
        return InventorySnapshot.from_wire(branch_id, rows)

    return await cache.read(inventory_fingerprint(branch_id), fetcher, ttl)
