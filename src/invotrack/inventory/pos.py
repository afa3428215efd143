"""Map already-fetched POS catalog rows into product lines.

Only the pull direction is covered: rows come from an HTTP collaborator and
are turned into `Product` lines tagged with a "<system>_sync" source. The
field names follow each POS system's export format.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..domain.models import Product
from ..logging import get_logger
from .constants import SYNC_SOURCE_SUFFIX
from .errors import ValidationError
from .parser import parse_product_line


LOG = get_logger("inventory-pos")


def sync_source(system_id: str) -> str:
    system = (system_id or "").strip().lower()
    if not system:
        raise ValidationError("POS system id is required")
    return f"{system}{SYNC_SOURCE_SUFFIX}"


def _first(row: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = row.get(name)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def map_caspit_product(row: Mapping[str, Any]) -> Optional[Product]:
    catalog = _text(_first(row, "CatalogNumber"))
    description = _text(_first(row, "Name", "Description"))
    if not catalog and not description:
        LOG.warning("Skipping Caspit row without catalog number or name: %r", dict(row))
        return None
    return parse_product_line(
        {
            "catalog_number": catalog,
            "description": description,
            "barcode": _first(row, "Barcode"),
            "unit_price": _first(row, "PurchasePrice"),
            "sale_price": _first(row, "SalePrice1"),
            "quantity": _first(row, "QtyInStock"),
        }
    )


def map_hashavshevet_product(row: Mapping[str, Any]) -> Optional[Product]:
    catalog = _text(_first(row, "ItemCode", "CatalogNum"))
    description = _text(_first(row, "ItemName", "Description"))
    if not catalog and not description:
        LOG.warning("Skipping Hashavshevet row without item code or name: %r", dict(row))
        return None
    return parse_product_line(
        {
            "catalog_number": catalog,
            "description": description,
            "barcode": _first(row, "Barcode"),
            "unit_price": _first(row, "PurchasePrice", "CostPrice"),
            "sale_price": _first(row, "SalePrice", "ListPrice"),
            "quantity": _first(row, "StockQuantity", "QuantityOnHand"),
        }
    )


MAPPERS: Dict[str, Callable[[Mapping[str, Any]], Optional[Product]]] = {
    "caspit": map_caspit_product,
    "hashavshevet": map_hashavshevet_product,
}


def map_pos_products(system_id: str, rows: Iterable[Mapping[str, Any]]) -> List[Product]:
    """Map raw POS rows for `system_id`; unmappable rows are skipped."""
    system = (system_id or "").strip().lower()
    mapper = MAPPERS.get(system)
    if mapper is None:
        raise ValidationError(f"Unsupported POS system: {system_id!r}. Choose one of: {', '.join(sorted(MAPPERS))}")
    products: List[Product] = []
    for idx, row in enumerate(rows or []):
        if not isinstance(row, Mapping):
            LOG.warning("Skipping %s row #%d: not an object", system, idx)
            continue
        try:
            product = mapper(row)
        except ValidationError as exc:
            raise ValidationError(f"{system} row {idx}: {exc}") from exc
        if product is not None:
            products.append(product)
    LOG.info("Mapped %d product(s) from %s", len(products), system)
    return products
