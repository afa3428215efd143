from __future__ import annotations

import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

from ..domain.identity import has_catalog_number, is_identifiable, resolve_identity, stable_id
from ..domain.models import FinalizeResult, InvoiceHistoryItem, Product
from ..domain.normalize import round2
from ..logging import get_logger
from .capacity import CapacityGovernor
from .constants import (
    INVENTORY_KEY,
    INVOICE_HISTORY_KEY,
    PAYMENT_UNPAID,
    SOURCE_UPLOAD,
    STATUS_COMPLETED,
    STATUS_ERROR,
    SYNC_SOURCE_SUFFIX,
)
from .errors import InvoTrackError, PartialBatchError, StorageError
from .parser import parse_optional_amount
from .persistence import PersistenceAdapter


LOG = get_logger("inventory-merge")

_OPTIONAL_TEXT_FIELDS = ("description", "short_name", "barcode", "supplier")
_OPTIONAL_NUMBER_FIELDS = ("sale_price", "min_stock_level", "max_stock_level")


def utc_timestamp(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def new_product_id() -> str:
    return f"prod-{uuid.uuid4().hex[:12]}"


def new_invoice_id() -> str:
    return f"inv-{uuid.uuid4().hex[:12]}"


def load_inventory(persistence: PersistenceAdapter, user_id: Optional[str]) -> List[Product]:
    return [Product.from_dict(item) for item in persistence.read(INVENTORY_KEY, user_id)]


def load_invoices(persistence: PersistenceAdapter, user_id: Optional[str]) -> List[InvoiceHistoryItem]:
    return [InvoiceHistoryItem.from_dict(item) for item in persistence.read(INVOICE_HISTORY_KEY, user_id)]


def store_inventory(persistence: PersistenceAdapter, products: Sequence[Product], user_id: Optional[str]) -> None:
    # line_total is derived on read and is not stored
    persistence.write(INVENTORY_KEY, [asdict(p) for p in products], user_id)


def store_invoices(
    persistence: PersistenceAdapter,
    invoices: Sequence[InvoiceHistoryItem],
    user_id: Optional[str],
) -> None:
    persistence.write(INVOICE_HISTORY_KEY, [inv.to_dict() for inv in invoices], user_id)


def is_sync_source(source: Optional[str]) -> bool:
    return bool(source) and str(source).endswith(SYNC_SOURCE_SUFFIX)


def merge_into(existing: Product, line: Product) -> None:
    """Accumulate one incoming line into an existing record (in place)."""
    existing.quantity = (existing.quantity or 0.0) + (line.quantity or 0.0)
    if line.unit_price:
        existing.unit_price = line.unit_price
    for name in _OPTIONAL_TEXT_FIELDS:
        value = getattr(line, name)
        if value:
            setattr(existing, name, value)
    if has_catalog_number(line):
        existing.catalog_number = line.catalog_number
    for name in _OPTIONAL_NUMBER_FIELDS:
        value = getattr(line, name)
        if value is not None:
            setattr(existing, name, value)


class InventoryMergeEngine:
    """Commits a reviewed batch into inventory and invoice history.

    Inventory is always written before invoice history. Per-line failures
    do not abort the batch: already merged lines are kept and the invoice is
    recorded with status "error" instead of being lost.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        governor: Optional[CapacityGovernor] = None,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        product_id_factory: Callable[[], str] = new_product_id,
        invoice_id_factory: Callable[[], str] = new_invoice_id,
    ) -> None:
        self.persistence = persistence
        self.governor = governor or CapacityGovernor()
        self.clock = clock
        self.product_id_factory = product_id_factory
        self.invoice_id_factory = invoice_id_factory

    def finalize(
        self,
        batch: Sequence[Product],
        file_name: str,
        user_id: Optional[str] = None,
        *,
        source: str = SOURCE_UPLOAD,
        temp_invoice_id: Optional[str] = None,
        scan_id: Optional[str] = None,
        original_file_name: Optional[str] = None,
        document_type: Optional[str] = None,
        invoice_number: Optional[str] = None,
        supplier_name: Optional[str] = None,
        extracted_total: Any = None,
        original_image_preview_uri: Optional[str] = None,
        compressed_image_uri: Optional[str] = None,
    ) -> FinalizeResult:
        now = utc_timestamp(self.clock())
        inventory = load_inventory(self.persistence, user_id)

        failures = PartialBatchError()
        committed: List[Product] = []
        skipped = 0
        running_total = 0.0

        for idx, line in enumerate(batch):
            try:
                if not is_identifiable(line):
                    skipped += 1
                    LOG.info("Skipping line %d of '%s': no catalog number, description or barcode", idx + 1, file_name)
                    continue
                line_total = line.line_total
                pos, matched_on = resolve_identity(line, inventory)
                if pos is not None:
                    record = inventory[pos]
                    merge_into(record, line)
                    record.last_updated = now
                    LOG.debug("Merged line %d into %s (matched on %s)", idx + 1, record.id, matched_on)
                else:
                    record = replace(line, id=stable_id(line) or self.product_id_factory(), last_updated=now)
                    inventory.append(record)
                    LOG.debug("Created product %s from line %d", record.id, idx + 1)
                running_total = round2(running_total + line_total)
                committed.append(replace(line, id=record.id))
            except StorageError:
                raise
            except Exception as exc:
                LOG.error("Line %d of '%s' failed to merge: %s", idx + 1, file_name, exc)
                failures.add(idx, exc)

        inventory, pruned = self.governor.prune_inventory(inventory)
        # a capacity error here is a hard failure; no invoice is written for it
        store_inventory(self.persistence, inventory, user_id)
        LOG.info(
            "Inventory for user=%s updated from '%s' (%d line(s), %d skipped, %d failed, source=%s)",
            user_id or "-",
            file_name,
            len(committed),
            skipped,
            len(failures.failures),
            source,
        )

        result = FinalizeResult(
            inventory_pruned=pruned,
            invoice=None,
            products=committed,
            skipped_lines=skipped,
            failed_lines=len(failures.failures),
        )
        if source != SOURCE_UPLOAD:
            if not is_sync_source(source):
                LOG.warning("Source '%s' is neither an upload nor a sync; no invoice recorded", source)
            return result

        total = parse_optional_amount(extracted_total, "extracted total")
        if total is None:
            total = running_total

        invoices = load_invoices(self.persistence, user_id)
        invoice = self._upsert_invoice(
            invoices,
            temp_invoice_id=temp_invoice_id,
            now=now,
            file_name=file_name,
            original_file_name=original_file_name,
            document_type=document_type,
            invoice_number=invoice_number,
            supplier_name=supplier_name,
            total_amount=total,
            failures=failures,
            committed=committed,
            source=source,
            original_image_preview_uri=original_image_preview_uri,
            compressed_image_uri=compressed_image_uri,
        )
        invoices, _ = self.governor.prune_invoice_history(invoices)
        try:
            store_invoices(self.persistence, invoices, user_id)
        except InvoTrackError as exc:
            if failures:
                exc.already_handled = True
            raise

        result.invoice = invoice
        result.scan_id_to_clear = scan_id or None
        return result

    def _upsert_invoice(
        self,
        invoices: List[InvoiceHistoryItem],
        *,
        temp_invoice_id: Optional[str],
        now: str,
        file_name: str,
        original_file_name: Optional[str],
        document_type: Optional[str],
        invoice_number: Optional[str],
        supplier_name: Optional[str],
        total_amount: float,
        failures: PartialBatchError,
        committed: List[Product],
        source: str,
        original_image_preview_uri: Optional[str],
        compressed_image_uri: Optional[str],
    ) -> InvoiceHistoryItem:
        status = STATUS_ERROR if failures else STATUS_COMPLETED
        error_message = failures.summary() if failures else None
        snapshot = [p.to_dict() for p in committed]

        existing = None
        if temp_invoice_id:
            existing = next((inv for inv in invoices if inv.id == temp_invoice_id), None)

        if existing is not None:
            existing.file_name = file_name or existing.file_name
            existing.original_file_name = original_file_name or existing.original_file_name or file_name
            existing.status = status
            existing.error_message = error_message
            existing.total_amount = total_amount
            existing.item_count = len(committed)
            existing.products = snapshot
            existing.source = source
            existing.payment_status = existing.payment_status or PAYMENT_UNPAID
            existing.document_type = document_type or existing.document_type
            existing.invoice_number = invoice_number or existing.invoice_number
            existing.supplier_name = supplier_name or existing.supplier_name
            existing.original_image_preview_uri = original_image_preview_uri or existing.original_image_preview_uri
            existing.compressed_image_uri = compressed_image_uri or existing.compressed_image_uri
            LOG.info("Updated invoice %s in place (status=%s, total=%.2f)", existing.id, status, total_amount)
            return existing

        invoice = InvoiceHistoryItem(
            id=temp_invoice_id or self.invoice_id_factory(),
            file_name=file_name,
            upload_time=now,
            status=status,
            original_file_name=original_file_name or file_name,
            document_type=document_type,
            invoice_number=invoice_number,
            supplier_name=supplier_name,
            total_amount=total_amount,
            error_message=error_message,
            payment_status=PAYMENT_UNPAID,
            original_image_preview_uri=original_image_preview_uri,
            compressed_image_uri=compressed_image_uri,
            item_count=len(committed),
            products=snapshot,
            source=source,
        )
        invoices.append(invoice)
        LOG.info("Created invoice %s (status=%s, total=%.2f)", invoice.id, status, total_amount)
        return invoice
