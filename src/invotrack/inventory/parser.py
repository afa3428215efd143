from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..domain.identity import CATALOG_NUMBER_UNKNOWN
from ..domain.models import Product
from ..domain.normalize import derive_short_name, effective_unit_price, norm_text, round2, to_number
from ..logging import get_logger
from .errors import ValidationError


LOG = get_logger("inventory-parser")

# External (OCR / POS / API) key -> Product field
_ALIASES: Dict[str, str] = {
    "id": "id",
    "catalogNumber": "catalog_number",
    "catalog_number": "catalog_number",
    "description": "description",
    "name": "description",
    "shortName": "short_name",
    "short_name": "short_name",
    "barcode": "barcode",
    "quantity": "quantity",
    "unitPrice": "unit_price",
    "unit_price": "unit_price",
    "salePrice": "sale_price",
    "sale_price": "sale_price",
    "lineTotal": "line_total",
    "line_total": "line_total",
    "minStockLevel": "min_stock_level",
    "min_stock_level": "min_stock_level",
    "maxStockLevel": "max_stock_level",
    "max_stock_level": "max_stock_level",
    "supplier": "supplier",
}

ProductLike = Union[Product, Mapping[str, Any]]


def _canonical(row: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in row.items():
        field = _ALIASES.get(key)
        if field is None:
            continue
        # "description" wins over "name" when both are given
        if field in out and key == "name":
            continue
        out[field] = value
    return out


def _number(data: Dict[str, Any], field: str, *, default: Optional[float] = None) -> Optional[float]:
    raw = data.get(field)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    value = to_number(raw)
    if value is None:
        raise ValidationError(f"{field} must be a number, got {raw!r}")
    return value


def parse_product_line(row: ProductLike) -> Product:
    """Validate and normalize one external product line into a Product.

    Accepts camelCase or snake_case keys, plain numbers or locale-formatted
    numeric strings. The unit price falls back to line_total / quantity when
    it is zero and both of those are set.
    """
    if isinstance(row, Product):
        row = row.to_dict()
    if not isinstance(row, Mapping):
        raise ValidationError("product line must be an object")
    data = _canonical(row)

    quantity = _number(data, "quantity", default=0.0) or 0.0
    if quantity < 0:
        raise ValidationError(f"quantity must not be negative, got {quantity}")
    unit_price = _number(data, "unit_price", default=0.0) or 0.0
    if unit_price < 0:
        raise ValidationError(f"unit_price must not be negative, got {unit_price}")
    line_total = _number(data, "line_total")
    sale_price = _number(data, "sale_price")

    description = norm_text(data.get("description")) or ""
    short_name = norm_text(data.get("short_name")) or derive_short_name(description)

    return Product(
        id=norm_text(data.get("id")),
        catalog_number=norm_text(data.get("catalog_number")) or CATALOG_NUMBER_UNKNOWN,
        description=description,
        short_name=short_name,
        barcode=norm_text(data.get("barcode")),
        quantity=quantity,
        unit_price=effective_unit_price(unit_price, quantity, line_total),
        sale_price=round2(sale_price) if sale_price is not None else None,
        min_stock_level=_number(data, "min_stock_level"),
        max_stock_level=_number(data, "max_stock_level"),
        supplier=norm_text(data.get("supplier")),
    )


def parse_batch(rows: Iterable[ProductLike]) -> List[Product]:
    """Normalize a batch; the failing row index is named in the error."""
    if rows is None:
        raise ValidationError("products must be a list")
    if isinstance(rows, (str, bytes, Mapping)):
        raise ValidationError("products must be a list of objects")
    out: List[Product] = []
    for idx, row in enumerate(rows):
        try:
            out.append(parse_product_line(row))
        except ValidationError as exc:
            raise ValidationError(f"products[{idx}]: {exc}") from exc
    LOG.debug("Normalized batch of %d product line(s)", len(out))
    return out


def parse_optional_amount(value: Any, field: str = "amount") -> Optional[float]:
    """Financial override such as an extracted invoice total.

    None when absent or not numeric; callers then fall back to computed values.
    """
    if value is None or isinstance(value, bool) or (isinstance(value, str) and not value.strip()):
        return None
    number = to_number(value)
    if number is None:
        LOG.warning(f"Ignoring non-numeric {field}: {value!r}")
        return None
    return round2(number)
