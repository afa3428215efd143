from __future__ import annotations

from dataclasses import asdict, replace
from typing import List, Mapping, Optional, Sequence

from ..domain.identity import resolve_identity
from ..domain.models import PriceCheckResult, Product, ProductPriceDiscrepancy
from ..logging import get_logger
from .constants import PRICE_EPSILON
from .errors import ValidationError


LOG = get_logger("inventory-reconcile")

DECISION_KEEP_OLD = "keep_old"
DECISION_UPDATE_NEW = "update_new"


def check_prices(batch: Sequence[Product], inventory: Sequence[Product]) -> PriceCheckResult:
    """Split a batch into lines to save directly and unit-price discrepancies.

    Read-only: neither the batch nor the inventory snapshot is modified.

    - No inventory match: saved directly.
    - Match with a non-zero incoming unit price that differs from the stored
      one by more than PRICE_EPSILON: reported as a discrepancy.
    - Otherwise: saved directly with the stored unit price kept, so float
      noise cannot re-trigger a discrepancy later.
    """
    result = PriceCheckResult()
    for line in batch:
        idx, matched_on = resolve_identity(line, inventory)
        if idx is None:
            result.to_save_directly.append(replace(line))
            continue
        existing = inventory[idx]
        new_price = line.unit_price
        if new_price and abs(existing.unit_price - new_price) > PRICE_EPSILON:
            LOG.info(
                "Unit price change for %s (matched on %s): %.4f -> %.4f",
                existing.id,
                matched_on,
                existing.unit_price,
                new_price,
            )
            fields = asdict(existing)
            # the line still carries the incoming quantity for the later merge
            fields["quantity"] = line.quantity
            result.discrepancies.append(
                ProductPriceDiscrepancy(
                    **fields,
                    existing_unit_price=existing.unit_price,
                    new_unit_price=new_price,
                )
            )
            continue
        result.to_save_directly.append(replace(line, id=existing.id, unit_price=existing.unit_price))
    LOG.debug(
        "Price check: %d direct, %d discrepanc%s",
        len(result.to_save_directly),
        len(result.discrepancies),
        "y" if len(result.discrepancies) == 1 else "ies",
    )
    return result


def resolve_price_discrepancies(
    discrepancies: Sequence[ProductPriceDiscrepancy],
    decisions: Optional[Mapping[str, str]] = None,
) -> List[Product]:
    """Apply per-product decisions ("keep_old" by default, or "update_new").

    Returns plain product lines ready to be finalized.
    """
    decisions = decisions or {}
    resolved: List[Product] = []
    for d in discrepancies:
        decision = decisions.get(d.id or "", DECISION_KEEP_OLD)
        if decision not in (DECISION_KEEP_OLD, DECISION_UPDATE_NEW):
            raise ValidationError(f"Unknown price decision {decision!r} for product {d.id}")
        price = d.new_unit_price if decision == DECISION_UPDATE_NEW else d.existing_unit_price
        fields = {k: v for k, v in asdict(d).items() if k not in ("existing_unit_price", "new_unit_price")}
        fields["unit_price"] = price
        resolved.append(Product(**fields))
    return resolved
