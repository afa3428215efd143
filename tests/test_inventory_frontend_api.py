from datetime import datetime, timezone

from starlette.testclient import TestClient

from invotrack.config import InventorySettings
from invotrack.inventory import InventoryService, MemoryKeyValueStore, create_app


NOW = datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc)


def _client(store=None, **settings):
    service = InventoryService(
        store if store is not None else MemoryKeyValueStore(),
        settings=InventorySettings(**settings),
        clock=lambda: NOW,
    )
    return TestClient(create_app(service=service))


BATCH = {
    "file_name": "invoice-55.pdf",
    "products": [{"catalogNumber": "A1", "description": "Widget", "quantity": 3, "unitPrice": 5}],
}


def test_health_and_finalize_flow():
    with _client() as client:
        assert client.get("/api/health").json()["status"] == "ok"

        res = client.post("/api/users/u1/finalize", json=BATCH)
        assert res.status_code == 200
        body = res.json()
        assert body["invoice"]["status"] == "completed"
        assert body["invoice"]["total_amount"] == 15.0
        assert body["inventory_pruned"] is False

        products = client.get("/api/users/u1/products").json()
        assert products["count"] == 1
        assert products["items"][0]["line_total"] == 15.0

        pid = products["items"][0]["id"]
        detail = client.get(f"/api/users/u1/products/{pid}")
        assert detail.status_code == 200
        assert detail.json()["catalog_number"] == "A1"

        patched = client.patch(f"/api/users/u1/products/{pid}", json={"quantity": 4})
        assert patched.json()["line_total"] == 20.0

        assert client.get("/api/users/u2/products").json()["count"] == 0


def test_price_check_and_decisions():
    with _client() as client:
        client.post("/api/users/u1/finalize", json=BATCH)

        res = client.post(
            "/api/users/u1/price-check",
            json={"products": [{"catalogNumber": "A1", "quantity": 2, "unitPrice": 12.5}]},
        )
        assert res.status_code == 200
        discrepancies = res.json()["discrepancies"]
        assert len(discrepancies) == 1
        assert discrepancies[0]["existing_unit_price"] == 5.0

        pid = discrepancies[0]["id"]
        resolved = client.post(
            "/api/users/u1/price-decisions",
            json={"discrepancies": discrepancies, "decisions": {pid: "update_new"}},
        ).json()["products"]
        assert resolved[0]["unit_price"] == 12.5

        final = client.post("/api/users/u1/finalize", json={"file_name": "b.pdf", "products": resolved})
        assert final.status_code == 200
        product = client.get(f"/api/users/u1/products/{pid}").json()
        assert product["quantity"] == 5.0
        assert product["unit_price"] == 12.5


def test_error_mapping():
    with _client() as client:
        missing = client.get("/api/users/u1/products/nope")
        assert missing.status_code == 404

        delete_missing = client.delete("/api/users/u1/products/nope")
        assert delete_missing.status_code == 404
        assert "not found" in delete_missing.json()["detail"]

        bad_batch = client.post("/api/users/u1/finalize", json={"file_name": "x.pdf", "products": [{"quantity": -1}]})
        assert bad_batch.status_code == 400

        not_json = client.post("/api/users/u1/finalize", content=b"{oops", headers={"content-type": "application/json"})
        assert not_json.status_code == 400


def test_storage_full_maps_to_507():
    with _client(MemoryKeyValueStore(quota_bytes=50)) as client:
        res = client.post("/api/users/u1/finalize", json=BATCH)
        assert res.status_code == 507
        assert "Storage is full" in res.json()["detail"]


def test_invoice_endpoints():
    with _client() as client:
        pending = client.post("/api/users/u1/invoices", json={"file_name": "scan.jpg", "scan_id": "1780000000000_scan.jpg"})
        assert pending.status_code == 201
        inv_id = pending.json()["id"]
        assert inv_id == "pending-inv-u1_1780000000000_scan.jpg"

        assert client.post(f"/api/users/u1/invoices/{inv_id}/processing").json()["status"] == "processing"
        again = client.post(f"/api/users/u1/invoices/{inv_id}/processing")
        assert again.status_code == 400

        client.post("/api/users/u1/finalize", json={**BATCH, "temp_invoice_id": inv_id, "supplier_name": "ACME"})
        invoices = client.get("/api/users/u1/invoices").json()
        assert invoices["count"] == 1
        assert invoices["items"][0]["supplier_name"] == "ACME"

        paid = client.put(f"/api/users/u1/invoices/{inv_id}/payment", json={"status": "paid"})
        assert paid.json()["payment_status"] == "paid"
        assert client.put(f"/api/users/u1/invoices/{inv_id}/payment", json={"status": "later"}).status_code == 400

        edited = client.patch(f"/api/users/u1/invoices/{inv_id}", json={"invoiceNumber": "INV-900"})
        assert edited.json()["invoice_number"] == "INV-900"

        assert client.delete(f"/api/users/u1/invoices/{inv_id}").status_code == 200
        assert client.get("/api/users/u1/invoices").json()["count"] == 0


def test_scan_staging_and_pos_sync_endpoints():
    with _client() as client:
        staged = client.post(
            "/api/users/u1/scans",
            json={"file_name": "r.jpg", "raw_scan_result": {"products": []}, "original_preview_uri": "data:p"},
        )
        assert staged.status_code == 201
        scan_id = staged.json()["scan_id"]
        assert scan_id.endswith("_r.jpg")

        assert client.get(f"/api/users/u1/scans/{scan_id}").json()["preview"] == "data:p"
        assert client.delete(f"/api/users/u1/scans/{scan_id}").json()["removed"] == 2

        synced = client.post(
            "/api/users/u1/pos/hashavshevet/sync",
            json={"rows": [{"ItemCode": "H1", "ItemName": "Tea", "StockQuantity": 6}]},
        )
        assert synced.status_code == 200
        assert synced.json()["invoice"] is None
        assert client.get("/api/users/u1/pos/sync-state").json()["state"]["items_synced"] == 1
        assert client.get("/api/users/u1/invoices").json()["count"] == 0

        assert client.post("/api/users/u1/pos/unknown/sync", json={"rows": []}).status_code == 400
        assert client.post("/api/maintenance/sweep?aggressive=true").json() == {"removed": 0}


def test_clear_inventory_endpoint():
    with _client() as client:
        client.post("/api/users/u1/finalize", json=BATCH)
        assert client.delete("/api/users/u1/products").json() == {"status": "cleared"}
        assert client.get("/api/users/u1/products").json()["count"] == 0


def test_non_finite_numbers_are_rejected_and_inventory_stays_readable():
    with _client() as client:
        for literal in (b"NaN", b"Infinity", b"-Infinity"):
            body = b'{"file_name": "x.pdf", "products": [{"catalogNumber": "A1", "quantity": ' + literal + b"}]}"
            res = client.post("/api/users/u1/finalize", content=body, headers={"content-type": "application/json"})
            assert res.status_code == 400
            assert "quantity" in res.json()["detail"]

        products = client.get("/api/users/u1/products")
        assert products.status_code == 200
        assert products.json()["count"] == 0
        assert client.get("/api/users/u1/invoices").json()["count"] == 0
