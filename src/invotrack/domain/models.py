from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from .normalize import round2


@dataclass
class Product:
    id: Optional[str]
    catalog_number: str
    description: str = ""
    short_name: Optional[str] = None
    barcode: Optional[str] = None
    quantity: float = 0.0
    unit_price: float = 0.0
    sale_price: Optional[float] = None
    min_stock_level: Optional[float] = None
    max_stock_level: Optional[float] = None
    supplier: Optional[str] = None
    last_updated: Optional[str] = None

    @property
    def line_total(self) -> float:
        """Always derived; never stored as a source of truth."""
        return round2(self.quantity * self.unit_price)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["line_total"] = self.line_total
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs.setdefault("id", None)
        kwargs.setdefault("catalog_number", "")
        product = cls(**kwargs)
        product.quantity = float(product.quantity or 0)
        product.unit_price = float(product.unit_price or 0)
        return product


@dataclass
class ProductPriceDiscrepancy(Product):
    existing_unit_price: float = 0.0
    new_unit_price: float = 0.0


@dataclass
class PriceCheckResult:
    to_save_directly: List[Product] = field(default_factory=list)
    discrepancies: List[ProductPriceDiscrepancy] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "to_save_directly": [p.to_dict() for p in self.to_save_directly],
            "discrepancies": [d.to_dict() for d in self.discrepancies],
        }


@dataclass
class InvoiceHistoryItem:
    id: str
    file_name: str
    upload_time: str  # ISO-8601, UTC
    status: str
    original_file_name: Optional[str] = None
    document_type: Optional[str] = None
    invoice_number: Optional[str] = None
    supplier_name: Optional[str] = None
    total_amount: Optional[float] = None
    error_message: Optional[str] = None
    payment_status: str = "unpaid"
    payment_date: Optional[str] = None
    payment_receipt_image_uri: Optional[str] = None
    original_image_preview_uri: Optional[str] = None
    compressed_image_uri: Optional[str] = None
    item_count: int = 0
    products: List[Dict[str, Any]] = field(default_factory=list)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvoiceHistoryItem":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs.setdefault("file_name", kwargs.get("original_file_name") or "")
        kwargs.setdefault("upload_time", "")
        kwargs.setdefault("status", "pending")
        return cls(**kwargs)


@dataclass
class FinalizeResult:
    inventory_pruned: bool
    invoice: Optional[InvoiceHistoryItem]
    products: List[Product]
    skipped_lines: int = 0
    failed_lines: int = 0
    scan_id_to_clear: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inventory_pruned": self.inventory_pruned,
            "invoice": self.invoice.to_dict() if self.invoice else None,
            "products": [p.to_dict() for p in self.products],
            "skipped_lines": self.skipped_lines,
            "failed_lines": self.failed_lines,
            "scan_id_to_clear": self.scan_id_to_clear,
        }
