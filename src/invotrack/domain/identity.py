from typing import Optional, Sequence, Tuple

from ..logging import get_logger
from .models import Product

LOG = get_logger("identity")

CATALOG_NUMBER_UNKNOWN = "N/A"
TEMP_PRODUCT_ID_PREFIXES: Tuple[str, ...] = ("prod-temp-", "scan-temp-")


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def is_temporary_id(product_id: Optional[str]) -> bool:
    pid = _clean(product_id)
    return not pid or pid.startswith(TEMP_PRODUCT_ID_PREFIXES)


def stable_id(product: Product) -> Optional[str]:
    """Return the product id if it is a real (non-temporary) identifier."""
    if is_temporary_id(product.id):
        return None
    return _clean(product.id)


def has_catalog_number(product: Product) -> bool:
    cat = _clean(product.catalog_number)
    return bool(cat) and cat != CATALOG_NUMBER_UNKNOWN


def is_identifiable(product: Product) -> bool:
    """False for empty/garbage rows with no catalog number, description or barcode."""
    return has_catalog_number(product) or bool(_clean(product.description)) or bool(_clean(product.barcode))


def resolve_identity(line: Product, inventory: Sequence[Product]) -> Tuple[Optional[int], Optional[str]]:
    """Find the inventory record an incoming line refers to.

    Resolution order, first match wins:
      1. explicit non-temporary id
      2. barcode, when non-empty
      3. catalog number, unless it is the "N/A" sentinel

    Returns (index into inventory, matched key name) or (None, None).
    """
    pid = stable_id(line)
    if pid:
        for idx, existing in enumerate(inventory):
            if _clean(existing.id) == pid:
                return idx, "id"

    barcode = _clean(line.barcode)
    if barcode:
        for idx, existing in enumerate(inventory):
            if _clean(existing.barcode) == barcode:
                return idx, "barcode"

    if has_catalog_number(line):
        cat = _clean(line.catalog_number)
        for idx, existing in enumerate(inventory):
            if _clean(existing.catalog_number) == cat:
                return idx, "catalog_number"

    LOG.debug(
        "No inventory match for line id=%s barcode=%s catalog=%s",
        line.id,
        line.barcode,
        line.catalog_number,
    )
    return None, None
