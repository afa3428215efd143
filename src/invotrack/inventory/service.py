from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional

from ..config import InventorySettings, load_inventory_settings
from ..domain.identity import resolve_identity
from ..domain.models import FinalizeResult, InvoiceHistoryItem, PriceCheckResult, Product
from ..logging import get_logger
from .capacity import CapacityGovernor
from .constants import (
    DOCUMENT_TYPE_CHOICES,
    INVOICE_STATUS_CHOICES,
    PAYMENT_PAID,
    PAYMENT_STATUS_CHOICES,
    PAYMENT_UNPAID,
    PENDING_INVOICE_ID_PREFIX,
    POS_SYNC_STATE_KEY,
    SOURCE_UPLOAD,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from .errors import InvalidStatusTransition, ValidationError
from .janitor import ScanDataJanitor
from .merge import (
    InventoryMergeEngine,
    load_inventory,
    load_invoices,
    store_inventory,
    store_invoices,
    utc_timestamp,
)
from .parser import ProductLike, parse_batch, parse_optional_amount, parse_product_line
from .persistence import PersistenceAdapter
from .pos import map_pos_products, sync_source
from .reconcile import check_prices
from .store import KeyValueStore, SqliteKeyValueStore


LOG = get_logger("inventory-service")

_EDITABLE_INVOICE_FIELDS = {
    "file_name",
    "original_file_name",
    "status",
    "document_type",
    "invoice_number",
    "supplier_name",
    "total_amount",
    "error_message",
    "payment_status",
    "payment_date",
    "payment_receipt_image_uri",
    "original_image_preview_uri",
    "compressed_image_uri",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _not_found(kind: str, record_id: str) -> ValidationError:
    return ValidationError(f"{kind} '{record_id}' not found", not_found=True)


class InventoryService:
    """Async service facade over the inventory core.

    Every public method takes the user id first. Mutations for one user are
    serialized through a per-user lock, so concurrent finalize calls cannot
    lose each other's updates.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        settings: Optional[InventorySettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or InventorySettings()
        self.store = store
        self.clock = clock
        self.janitor = ScanDataJanitor(
            store,
            max_age_hours=self.settings.staging_max_age_hours,
            max_scan_result_bytes=self.settings.max_scan_result_bytes,
            clock=clock,
        )
        self.persistence = PersistenceAdapter(store, recover_capacity=self._recover_capacity)
        self.governor = CapacityGovernor(
            self.settings.max_inventory_items,
            self.settings.max_invoice_history_items,
        )
        self.engine = InventoryMergeEngine(self.persistence, self.governor, clock=clock)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    def _recover_capacity(self) -> int:
        return self.janitor.sweep(aggressive=True)

    @asynccontextmanager
    async def _lock(self, user_id: Optional[str]) -> AsyncIterator[None]:
        """Hold the per-user lock; it is dropped once no task holds or awaits it."""
        key = user_id or ""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._locks[key]

    def _now(self) -> str:
        return utc_timestamp(self.clock())

    # ---------------- lifecycle ----------------
    async def startup(self) -> int:
        """Sweep stale staging entries left over from earlier sessions."""
        if not self.persistence.available:
            LOG.warning("Inventory storage unavailable; running in no-op mode")
            return 0
        removed = self.janitor.sweep(aggressive=False)
        LOG.info("Startup sweep removed %d stale staging entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    # ---------------- reconcile / merge ----------------
    async def check_prices(self, user_id: Optional[str], products: Iterable[ProductLike]) -> PriceCheckResult:
        batch = parse_batch(products)
        return check_prices(batch, load_inventory(self.persistence, user_id))

    async def finalize(
        self,
        user_id: Optional[str],
        products: Iterable[ProductLike],
        file_name: str,
        *,
        source: str = SOURCE_UPLOAD,
        temp_invoice_id: Optional[str] = None,
        scan_id: Optional[str] = None,
        **invoice_fields: Any,
    ) -> FinalizeResult:
        """Commit a reviewed batch.

        `invoice_fields` are passed through to the merge engine
        (original_file_name, document_type, invoice_number, supplier_name,
        extracted_total, original_image_preview_uri, compressed_image_uri).
        """
        if source == SOURCE_UPLOAD and not (file_name or "").strip():
            raise ValidationError("file_name is required for uploaded documents")
        document_type = invoice_fields.get("document_type")
        if document_type and document_type not in DOCUMENT_TYPE_CHOICES:
            raise ValidationError(f"Invalid document type: {document_type!r}")
        batch = parse_batch(products)
        async with self._lock(user_id):
            result = self.engine.finalize(
                batch,
                file_name,
                user_id,
                source=source,
                temp_invoice_id=temp_invoice_id,
                scan_id=scan_id,
                **invoice_fields,
            )
        if result.scan_id_to_clear:
            self.janitor.clear_session(result.scan_id_to_clear, user_id)
        return result

    # ---------------- products ----------------
    async def get_products(self, user_id: Optional[str]) -> List[Product]:
        return load_inventory(self.persistence, user_id)

    async def get_product_by_id(self, user_id: Optional[str], product_id: str) -> Optional[Product]:
        for product in load_inventory(self.persistence, user_id):
            if product.id == product_id:
                return product
        return None

    async def update_product(self, user_id: Optional[str], product_id: str, updates: Mapping[str, Any]) -> Product:
        """Direct field edit; quantity and prices are overwritten, not accumulated."""
        if not isinstance(updates, Mapping):
            raise ValidationError("updates must be an object")
        async with self._lock(user_id):
            inventory = load_inventory(self.persistence, user_id)
            pos = next((i for i, p in enumerate(inventory) if p.id == product_id), None)
            if pos is None:
                raise _not_found("Product", product_id)
            previous = inventory[pos]
            current = asdict(previous)
            if "name" in updates:
                current.pop("description", None)
            current.update(updates)
            updated = parse_product_line(current)
            updated.id = product_id
            if (updated.barcode, updated.catalog_number) != (previous.barcode, previous.catalog_number):
                others = inventory[:pos] + inventory[pos + 1 :]
                clash, key = resolve_identity(updated, others)
                if clash is not None:
                    raise ValidationError(
                        f"Product {product_id} would share its {key} with product {others[clash].id}; "
                        "merge or delete one of them first"
                    )
            updated.last_updated = self._now()
            inventory[pos] = updated
            store_inventory(self.persistence, inventory, user_id)
        LOG.info("Updated product %s for user=%s", product_id, user_id or "-")
        return updated

    async def delete_product(self, user_id: Optional[str], product_id: str) -> None:
        async with self._lock(user_id):
            inventory = load_inventory(self.persistence, user_id)
            remaining = [p for p in inventory if p.id != product_id]
            if len(remaining) == len(inventory):
                raise _not_found("Product", product_id)
            store_inventory(self.persistence, remaining, user_id)
        LOG.info("Deleted product %s for user=%s", product_id, user_id or "-")

    async def clear_inventory(self, user_id: Optional[str]) -> None:
        async with self._lock(user_id):
            store_inventory(self.persistence, [], user_id)
        LOG.info("Cleared inventory for user=%s", user_id or "-")

    # ---------------- invoices ----------------
    async def get_invoices(self, user_id: Optional[str]) -> List[InvoiceHistoryItem]:
        invoices = load_invoices(self.persistence, user_id)
        return sorted(invoices, key=lambda inv: inv.upload_time or "", reverse=True)

    async def update_invoice(
        self,
        user_id: Optional[str],
        invoice_id: str,
        updates: Mapping[str, Any],
    ) -> InvoiceHistoryItem:
        """Explicit human edit of an invoice record (the only way to overwrite status)."""
        if not isinstance(updates, Mapping):
            raise ValidationError("updates must be an object")
        changes: Dict[str, Any] = {}
        for key, value in updates.items():
            name = _snake(key)
            if name not in _EDITABLE_INVOICE_FIELDS:
                raise ValidationError(f"Field '{key}' cannot be edited")
            changes[name] = value
        if "status" in changes and changes["status"] not in INVOICE_STATUS_CHOICES:
            raise ValidationError(f"Invalid invoice status: {changes['status']!r}")
        if "payment_status" in changes and changes["payment_status"] not in PAYMENT_STATUS_CHOICES:
            raise ValidationError(f"Invalid payment status: {changes['payment_status']!r}")
        if changes.get("total_amount") is not None:
            amount = parse_optional_amount(changes["total_amount"], "total_amount")
            if amount is None:
                raise ValidationError(f"total_amount must be a number, got {changes['total_amount']!r}")
            changes["total_amount"] = amount

        async with self._lock(user_id):
            invoices = load_invoices(self.persistence, user_id)
            invoice = next((inv for inv in invoices if inv.id == invoice_id), None)
            if invoice is None:
                raise _not_found("Invoice", invoice_id)
            for name, value in changes.items():
                setattr(invoice, name, value)
            if "payment_status" in changes:
                self._apply_payment_status(invoice, changes["payment_status"], changes.get("payment_date"))
            store_invoices(self.persistence, invoices, user_id)
        LOG.info("Updated invoice %s fields %s", invoice_id, sorted(changes))
        return invoice

    def _apply_payment_status(
        self,
        invoice: InvoiceHistoryItem,
        status: str,
        payment_date: Optional[str] = None,
    ) -> None:
        # paid stamps the date unless one is given; any other status clears it
        invoice.payment_status = status
        if status == PAYMENT_PAID:
            invoice.payment_date = payment_date or self._now()
        else:
            invoice.payment_date = None

    async def update_invoice_payment_status(
        self,
        user_id: Optional[str],
        invoice_id: str,
        status: str,
        receipt_image_uri: Optional[str] = None,
    ) -> InvoiceHistoryItem:
        if status not in PAYMENT_STATUS_CHOICES:
            raise ValidationError(f"Invalid payment status: {status!r}. Choose one of: {', '.join(PAYMENT_STATUS_CHOICES)}")
        async with self._lock(user_id):
            invoices = load_invoices(self.persistence, user_id)
            invoice = next((inv for inv in invoices if inv.id == invoice_id), None)
            if invoice is None:
                raise _not_found("Invoice", invoice_id)
            self._apply_payment_status(invoice, status)
            if status == PAYMENT_PAID and receipt_image_uri:
                invoice.payment_receipt_image_uri = receipt_image_uri
            store_invoices(self.persistence, invoices, user_id)
        LOG.info("Invoice %s payment status -> %s", invoice_id, status)
        return invoice

    async def delete_invoice(self, user_id: Optional[str], invoice_id: str) -> None:
        async with self._lock(user_id):
            invoices = load_invoices(self.persistence, user_id)
            remaining = [inv for inv in invoices if inv.id != invoice_id]
            if len(remaining) == len(invoices):
                raise _not_found("Invoice", invoice_id)
            store_invoices(self.persistence, remaining, user_id)
        LOG.info("Deleted invoice %s for user=%s", invoice_id, user_id or "-")

    async def create_pending_invoice(
        self,
        user_id: Optional[str],
        file_name: str,
        temp_invoice_id: Optional[str] = None,
        *,
        scan_id: Optional[str] = None,
    ) -> InvoiceHistoryItem:
        """Record a scan as `pending` so finalize can later update it in place."""
        if not (file_name or "").strip():
            raise ValidationError("file_name is required")
        if not temp_invoice_id:
            scan_id = scan_id or ScanDataJanitor.new_scan_id(file_name)
            temp_invoice_id = f"{PENDING_INVOICE_ID_PREFIX}{user_id or 'anonymous'}_{scan_id}"
        async with self._lock(user_id):
            invoices = load_invoices(self.persistence, user_id)
            existing = next((inv for inv in invoices if inv.id == temp_invoice_id), None)
            if existing is not None:
                return existing
            invoice = InvoiceHistoryItem(
                id=temp_invoice_id,
                file_name=file_name,
                original_file_name=file_name,
                upload_time=self._now(),
                status=STATUS_PENDING,
                payment_status=PAYMENT_UNPAID,
                source=SOURCE_UPLOAD,
            )
            invoices.append(invoice)
            invoices, _ = self.governor.prune_invoice_history(invoices)
            store_invoices(self.persistence, invoices, user_id)
        LOG.info("Created pending invoice %s", temp_invoice_id)
        return invoice

    async def mark_invoice_processing(self, user_id: Optional[str], invoice_id: str) -> InvoiceHistoryItem:
        async with self._lock(user_id):
            invoices = load_invoices(self.persistence, user_id)
            invoice = next((inv for inv in invoices if inv.id == invoice_id), None)
            if invoice is None:
                raise _not_found("Invoice", invoice_id)
            if invoice.status != STATUS_PENDING:
                raise InvalidStatusTransition(
                    f"Invoice '{invoice_id}' is {invoice.status}; only pending invoices can start processing"
                )
            invoice.status = STATUS_PROCESSING
            store_invoices(self.persistence, invoices, user_id)
        return invoice

    # ---------------- staging ----------------
    async def stage_scan(self, user_id: Optional[str], scan_id: str, **entries: Any) -> Dict[str, bool]:
        return self.janitor.stage_scan(user_id, scan_id, **entries)

    async def load_scan(self, user_id: Optional[str], scan_id: str) -> Dict[str, Any]:
        return self.janitor.load_scan(user_id, scan_id)

    async def clear_session(self, user_id: Optional[str], scan_id: Optional[str]) -> int:
        return self.janitor.clear_session(scan_id, user_id)

    async def sweep(self, aggressive: bool = False, user_id: Optional[str] = None) -> int:
        return self.janitor.sweep(aggressive=aggressive, user_id=user_id)

    # ---------------- POS sync ----------------
    async def sync_pos_inventory(
        self,
        user_id: Optional[str],
        system_id: str,
        rows: Iterable[Mapping[str, Any]],
    ) -> FinalizeResult:
        """Merge already-fetched POS catalog rows; never creates an invoice."""
        source = sync_source(system_id)
        products = map_pos_products(system_id, rows)
        result = await self.finalize(user_id, products, f"{source} import", source=source)
        state = {
            "system_id": system_id.strip().lower(),
            "last_sync": self._now(),
            "items_synced": len(result.products),
        }
        async with self._lock(user_id):
            self.persistence.write_object(POS_SYNC_STATE_KEY, state, user_id)
        LOG.info("POS sync from %s for user=%s: %d item(s)", state["system_id"], user_id or "-", state["items_synced"])
        return result

    async def get_sync_state(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return self.persistence.read_object(POS_SYNC_STATE_KEY, user_id)


def build_inventory_service(
    root_dir: Optional[str] = None,
    *,
    settings: Optional[InventorySettings] = None,
) -> InventoryService:
    """Service backed by the SQLite store under the project's var/ directory."""
    settings = settings or load_inventory_settings(root_dir)
    store = SqliteKeyValueStore(root_dir, db_path=settings.db_path, quota_bytes=settings.store_quota_bytes)
    return InventoryService(store, settings=settings)
