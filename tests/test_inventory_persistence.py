import json

import pytest

from invotrack.domain.models import InvoiceHistoryItem, Product
from invotrack.inventory.capacity import CapacityGovernor
from invotrack.inventory.errors import CapacityExceededError, StorageError
from invotrack.inventory.janitor import ScanDataJanitor
from invotrack.inventory.persistence import PersistenceAdapter, get_storage_key
from invotrack.inventory.store import MemoryKeyValueStore, SqliteKeyValueStore


def test_storage_key_namespacing():
    assert get_storage_key("inventory", "u1") == "inventory_u1"
    assert get_storage_key("inventory", None) == "inventory"
    assert get_storage_key("inventory", "") == "inventory"


def test_collections_are_isolated_per_user():
    store = MemoryKeyValueStore()
    adapter = PersistenceAdapter(store)

    adapter.write("inventory", [{"id": "p1", "description": "Widget"}], "u1")

    assert store.get("inventory_u1") is not None
    assert adapter.read("inventory", "u1") == [{"id": "p1", "description": "Widget"}]
    assert adapter.read("inventory", "u2") == []


def test_read_synthesizes_missing_ids_and_drops_garbage():
    store = MemoryKeyValueStore()
    store.set("inventory_u1", json.dumps([{"description": "Blue Pen"}, {"id": "keep"}, 5]))

    items = PersistenceAdapter(store).read("inventory", "u1")

    assert [item["id"] for item in items] == ["inventory-0-blue-pen", "keep"]
    # deterministic across reads
    assert PersistenceAdapter(store).read("inventory", "u1")[0]["id"] == "inventory-0-blue-pen"


def test_read_returns_seed_copy_for_missing_or_corrupt_values():
    store = MemoryKeyValueStore()
    store.set("inventory_u1", "{not json")
    seed = [{"id": "seed"}]

    items = PersistenceAdapter(store).read("inventory", "u1", seed=seed)
    items[0]["id"] = "changed"

    assert seed == [{"id": "seed"}]


def test_unavailable_storage_is_a_no_op():
    adapter = PersistenceAdapter(None)

    assert not adapter.available
    assert adapter.read("inventory", "u1", seed=[{"id": "s"}]) == [{"id": "s"}]
    adapter.write("inventory", [{"id": "p1"}], "u1")
    assert adapter.read_object("pos_sync_state", "u1") is None
    assert adapter.remove("inventory", "u1") is False
    assert adapter._load_raw("inventory_u1") is None


def test_write_rejects_non_serializable_data():
    adapter = PersistenceAdapter(MemoryKeyValueStore())
    with pytest.raises(StorageError):
        adapter.write("inventory", [{"id": object()}], "u1")
    # NaN is not valid JSON
    with pytest.raises(StorageError):
        adapter.write("inventory", [{"id": "p1", "quantity": float("nan")}], "u1")
    assert adapter.read("inventory", "u1") == []


def test_quota_pressure_triggers_aggressive_sweep_and_retry():
    store = MemoryKeyValueStore(quota_bytes=200)
    store.set("scan_result_u1_orphan", "x" * 150)
    janitor = ScanDataJanitor(store)
    adapter = PersistenceAdapter(store, recover_capacity=lambda: janitor.sweep(aggressive=True))

    adapter.write("inventory", [{"id": "p1", "description": "y" * 60}], "u1")

    assert store.get("scan_result_u1_orphan") is None
    assert adapter.read("inventory", "u1")[0]["id"] == "p1"


def test_quota_error_propagates_after_single_retry():
    store = MemoryKeyValueStore(quota_bytes=40)
    calls = []
    adapter = PersistenceAdapter(store, recover_capacity=lambda: calls.append(1))

    with pytest.raises(CapacityExceededError):
        adapter.write("inventory", [{"id": "p1", "description": "z" * 100}], "u1")

    assert calls == [1]
    assert store.get("inventory_u1") is None


def test_sqlite_store_roundtrip_and_prefix_listing(tmp_path):
    store = SqliteKeyValueStore(db_path=str(tmp_path / "kv" / "store.sqlite3"))

    store.set("scan_result_u1_1", "a")
    store.set("scanXresult", "b")
    store.set("scan_result_u1_1", "c")

    assert store.get("scan_result_u1_1") == "c"
    # "_" must not act as a wildcard
    assert store.keys("scan_result_") == ["scan_result_u1_1"]
    assert store.delete("scan_result_u1_1") is True
    assert store.delete("scan_result_u1_1") is False
    assert store.get("missing") is None


def test_sqlite_store_enforces_quota(tmp_path):
    store = SqliteKeyValueStore(db_path=str(tmp_path / "store.sqlite3"), quota_bytes=50)
    store.set("k1", "v" * 20)

    with pytest.raises(CapacityExceededError):
        store.set("k2", "v" * 40)

    # overwriting an entry only counts its new size
    store.set("k1", "w" * 40)
    assert store.get("k1") == "w" * 40
    assert store.get("k2") is None


def test_sqlite_store_wraps_driver_errors(tmp_path):
    store = SqliteKeyValueStore(db_path=str(tmp_path / "store.sqlite3"))
    store.set("k1", "v")
    with store.connect() as conn:
        conn.execute("DROP TABLE kv_entries;")
        conn.commit()

    with pytest.raises(StorageError):
        store.get("k1")
    with pytest.raises(StorageError):
        store.delete("k1")
    with pytest.raises(StorageError):
        store.keys("k")
    with pytest.raises(StorageError):
        store.set("k1", "w")


def test_sqlite_store_default_location_under_project_root(tmp_path):
    (tmp_path / "README.md").write_text("marker", encoding="utf-8")
    nested = tmp_path / "sub"
    nested.mkdir()

    store = SqliteKeyValueStore(root_dir=str(nested))

    assert store.db_path == str(tmp_path / "var" / "invotrack" / "store.sqlite3")


def test_inventory_cap_keeps_highest_quantities():
    products = [Product(id=f"p{q}", catalog_number=f"C{q}", quantity=float(q)) for q in range(500, -1, -1)]

    kept, pruned = CapacityGovernor(max_inventory_items=500).prune_inventory(products)

    assert pruned is True
    assert len(kept) == 500
    assert min(p.quantity for p in kept) == 1.0
    assert "p0" not in {p.id for p in kept}


def test_inventory_cap_is_noop_under_limit():
    products = [Product(id="p1", catalog_number="A1", quantity=1.0)]
    kept, pruned = CapacityGovernor(max_inventory_items=500).prune_inventory(products)
    assert kept == products
    assert pruned is False


def test_invoice_history_cap_keeps_newest():
    invoices = [
        InvoiceHistoryItem(id=f"inv-{day:02d}", file_name="f.pdf", upload_time=f"2026-01-{day:02d}T10:00:00.000+00:00", status="completed")
        for day in range(1, 13)
    ]

    kept, pruned = CapacityGovernor(max_invoice_history_items=10).prune_invoice_history(invoices)

    assert pruned is True
    assert [inv.id for inv in kept][:2] == ["inv-12", "inv-11"]
    assert {"inv-01", "inv-02"}.isdisjoint(inv.id for inv in kept)
