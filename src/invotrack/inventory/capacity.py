from __future__ import annotations

from typing import List, Tuple

from ..config import MAX_INVENTORY_ITEMS, MAX_INVOICE_HISTORY_ITEMS
from ..domain.models import InvoiceHistoryItem, Product
from ..logging import get_logger


LOG = get_logger("inventory-capacity")


class CapacityGovernor:
    """Keeps the inventory and invoice-history collections under hard caps.

    Applied after merge logic and before the final write, so an oversized
    collection is never persisted.
    """

    def __init__(
        self,
        max_inventory_items: int = MAX_INVENTORY_ITEMS,
        max_invoice_history_items: int = MAX_INVOICE_HISTORY_ITEMS,
    ) -> None:
        self.max_inventory_items = max_inventory_items
        self.max_invoice_history_items = max_invoice_history_items

    def prune_inventory(self, products: List[Product]) -> Tuple[List[Product], bool]:
        """Keep the highest-quantity products when over the cap.

        Returns (products, pruned). The sort is stable, so products with equal
        quantity keep their stored order.
        """
        if len(products) <= self.max_inventory_items:
            return products, False
        ranked = sorted(products, key=lambda p: p.quantity, reverse=True)
        kept = ranked[: self.max_inventory_items]
        LOG.warning(
            "Inventory over capacity (%d > %d); dropped %d lowest-quantity product(s)",
            len(products),
            self.max_inventory_items,
            len(products) - len(kept),
        )
        return kept, True

    def prune_invoice_history(self, invoices: List[InvoiceHistoryItem]) -> Tuple[List[InvoiceHistoryItem], bool]:
        """Keep the newest invoices by upload time when over the cap."""
        if len(invoices) <= self.max_invoice_history_items:
            return invoices, False
        ranked = sorted(invoices, key=lambda inv: inv.upload_time or "", reverse=True)
        kept = ranked[: self.max_invoice_history_items]
        LOG.info(
            "Invoice history over capacity (%d > %d); discarded %d oldest record(s)",
            len(invoices),
            self.max_invoice_history_items,
            len(invoices) - len(kept),
        )
        return kept, True
