from __future__ import annotations

from typing import Tuple

# Collection base keys; the effective storage key is "<base>_<user_id>".
INVENTORY_KEY = "inventory"
INVOICE_HISTORY_KEY = "invoice_history"
POS_SYNC_STATE_KEY = "pos_sync_state"

# Identity
PENDING_INVOICE_ID_PREFIX = "pending-inv-"
PRICE_EPSILON = 0.001

# Batch sources
SOURCE_UPLOAD = "upload"
SYNC_SOURCE_SUFFIX = "_sync"

# Invoice status machine
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

INVOICE_STATUS_CHOICES: Tuple[str, ...] = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_ERROR,
)

PAYMENT_UNPAID = "unpaid"
PAYMENT_PENDING = "pending_payment"
PAYMENT_PAID = "paid"

PAYMENT_STATUS_CHOICES: Tuple[str, ...] = (
    PAYMENT_UNPAID,
    PAYMENT_PENDING,
    PAYMENT_PAID,
)

DOCUMENT_TYPE_DELIVERY_NOTE = "deliveryNote"
DOCUMENT_TYPE_INVOICE = "invoice"

DOCUMENT_TYPE_CHOICES: Tuple[str, ...] = (
    DOCUMENT_TYPE_DELIVERY_NOTE,
    DOCUMENT_TYPE_INVOICE,
)

# Scan-session staging entries (raw OCR JSON, preview image, image kept for the record).
STAGING_SCAN_RESULT_PREFIX = "scan_result_"
STAGING_PREVIEW_PREFIX = "scan_preview_"
STAGING_IMAGE_PREFIX = "scan_image_"

STAGING_PREFIXES: Tuple[str, ...] = (
    STAGING_SCAN_RESULT_PREFIX,
    STAGING_PREVIEW_PREFIX,
    STAGING_IMAGE_PREFIX,
)
