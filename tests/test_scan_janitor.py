from datetime import datetime, timedelta, timezone

from invotrack.inventory.errors import CapacityExceededError
from invotrack.inventory.janitor import ScanDataJanitor, extract_timestamp_ms, staging_key
from invotrack.inventory.store import MemoryKeyValueStore


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)
HOUR_MS = 60 * 60 * 1000


def _janitor(store, **kwargs):
    return ScanDataJanitor(store, clock=lambda: NOW, **kwargs)


def test_new_scan_id_sanitizes_file_name():
    scan_id = ScanDataJanitor.new_scan_id("my invoice (1).pdf", now_ms=1700000000000)
    assert scan_id == "1700000000000_my_invoice__1_.pdf"
    assert len(ScanDataJanitor.new_scan_id("x" * 200, now_ms=1)) == len("1_") + 50


def test_extract_timestamp_from_staging_keys():
    assert extract_timestamp_ms(f"scan_result_u1_{NOW_MS}_receipt.jpg") == NOW_MS
    assert extract_timestamp_ms("scan_preview_u1_12345_receipt.jpg") is None
    assert extract_timestamp_ms("scan_image_orphan") is None


def test_sweep_removes_entries_older_than_a_day():
    store = MemoryKeyValueStore()
    old = staging_key("scan_result_", f"{NOW_MS - 25 * HOUR_MS}_old.jpg", "u1")
    fresh = staging_key("scan_result_", f"{NOW_MS - 1 * HOUR_MS}_fresh.jpg", "u1")
    store.set(old, "{}")
    store.set(fresh, "{}")
    store.set("scan_preview_u1_orphan", "data:image/png;base64,AAAA")

    removed = _janitor(store).sweep(aggressive=False)

    assert removed == 1
    assert store.get(old) is None
    assert store.get(fresh) == "{}"
    assert store.get("scan_preview_u1_orphan") is not None


def test_aggressive_sweep_also_removes_keys_without_timestamp():
    store = MemoryKeyValueStore()
    fresh = staging_key("scan_image_", f"{NOW_MS}_fresh.jpg", "u1")
    store.set(fresh, "img")
    store.set("scan_preview_u1_orphan", "img")
    store.set("inventory_u1", "[]")

    removed = _janitor(store).sweep(aggressive=True)

    assert removed == 1
    assert store.get(fresh) == "img"
    assert store.get("inventory_u1") == "[]"


def test_sweep_can_be_limited_to_one_user():
    store = MemoryKeyValueStore()
    stale = f"{NOW_MS - 48 * HOUR_MS}_a.jpg"
    store.set(staging_key("scan_result_", stale, "u1"), "{}")
    store.set(staging_key("scan_result_", stale, "u2"), "{}")

    assert _janitor(store).sweep(user_id="u2") == 1
    assert store.keys("scan_result_u1_") == [staging_key("scan_result_", stale, "u1")]


def test_clear_session_removes_the_three_entries():
    store = MemoryKeyValueStore()
    janitor = _janitor(store)
    scan_id = f"{NOW_MS}_receipt.jpg"
    janitor.stage_scan(
        "u1",
        scan_id,
        raw_scan_result={"products": [{"catalogNumber": "A1"}]},
        original_preview_uri="data:preview",
        compressed_image_uri="data:compressed",
    )
    store.set(staging_key("scan_result_", "other", "u1"), "{}")

    assert janitor.clear_session(scan_id, "u1") == 3
    assert store.keys("scan_") == ["scan_result_u1_other"]


def test_clear_session_without_scan_id_never_guesses():
    store = MemoryKeyValueStore()
    store.set("scan_result_u1_orphan", "{}")

    assert _janitor(store).clear_session("", "u1") == 0
    assert store.get("scan_result_u1_orphan") == "{}"


def test_stage_and_load_scan():
    store = MemoryKeyValueStore()
    janitor = _janitor(store)

    stored = janitor.stage_scan("u1", "1_a.jpg", raw_scan_result={"total": 12.5}, original_preview_uri="data:p")
    loaded = janitor.load_scan("u1", "1_a.jpg")

    assert stored == {"scan_result": True, "preview": True, "image": False}
    assert loaded == {"scan_result": {"total": 12.5}, "preview": "data:p", "image": None}


def test_oversized_scan_result_is_not_staged():
    store = MemoryKeyValueStore()
    janitor = _janitor(store, max_scan_result_bytes=10)

    stored = janitor.stage_scan("u1", "1_a.jpg", raw_scan_result={"text": "x" * 100}, original_preview_uri="data:p")

    assert stored["scan_result"] is False
    assert stored["preview"] is True


class _AlwaysFullStore(MemoryKeyValueStore):
    def set(self, key, value):
        raise CapacityExceededError("full", key=key)


def test_staging_is_best_effort_when_storage_is_full():
    janitor = _janitor(_AlwaysFullStore())

    stored = janitor.stage_scan("u1", "1_a.jpg", original_preview_uri="data:p")

    assert stored == {"scan_result": False, "preview": False, "image": False}


def test_no_store_means_nothing_to_do():
    janitor = ScanDataJanitor(None)
    assert janitor.sweep(aggressive=True) == 0
    assert janitor.clear_session("1_a.jpg") == 0
    assert janitor.load_scan("u1", "1_a.jpg") == {"scan_result": None, "preview": None, "image": None}
