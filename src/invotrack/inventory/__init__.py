"""Inventory reconciliation and persistence package.

Takes scanned or POS-synced product lines and merges them into a durable,
per-user inventory and invoice history kept in a key/value store.

Modules:
- store: key/value storage port with SQLite and in-memory adapters
- persistence: per-user namespaced JSON collections with quota recovery
- capacity: hard caps for inventory and invoice history
- parser: normalization of external product lines
- reconcile: unit-price discrepancy pre-check
- merge: the finalize step (inventory + invoice history)
- janitor: scan-session staging entries and their cleanup
- pos: POS catalog row mapping (pull direction)
- service: async service facade used by the API and CLI
"""

from .errors import (
    CapacityExceededError,
    InvalidStatusTransition,
    InvoTrackError,
    PartialBatchError,
    StorageError,
    ValidationError,
)
from .store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .persistence import PersistenceAdapter, get_storage_key
from .capacity import CapacityGovernor
from .reconcile import check_prices, resolve_price_discrepancies
from .merge import InventoryMergeEngine
from .janitor import ScanDataJanitor
from .service import InventoryService, build_inventory_service
from .frontend.app import create_app

__all__ = [
    "CapacityExceededError",
    "CapacityGovernor",
    "InvalidStatusTransition",
    "InvoTrackError",
    "InventoryMergeEngine",
    "InventoryService",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "PartialBatchError",
    "PersistenceAdapter",
    "ScanDataJanitor",
    "SqliteKeyValueStore",
    "StorageError",
    "ValidationError",
    "build_inventory_service",
    "check_prices",
    "create_app",
    "get_storage_key",
    "resolve_price_discrepancies",
]
