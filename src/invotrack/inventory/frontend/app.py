from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ...domain.models import ProductPriceDiscrepancy
from ...logging import get_logger
from ...paths import find_project_root
from ..errors import CapacityExceededError, InvoTrackError, ValidationError
from ..janitor import ScanDataJanitor
from ..reconcile import resolve_price_discrepancies
from ..service import InventoryService, build_inventory_service


LOG = get_logger("inventory-frontend")

# Optional invoice metadata accepted by the finalize endpoint.
FINALIZE_INVOICE_FIELDS = (
    "original_file_name",
    "document_type",
    "invoice_number",
    "supplier_name",
    "extracted_total",
    "original_image_preview_uri",
    "compressed_image_uri",
)


def _parse_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


async def _validation_error(_: Request, exc: Exception) -> JSONResponse:
    status = 404 if getattr(exc, "not_found", False) else 400
    return JSONResponse({"detail": str(exc)}, status_code=status)


async def _capacity_error(_: Request, exc: Exception) -> JSONResponse:
    LOG.error("Storage capacity exceeded: %s", exc)
    return JSONResponse(
        {"detail": f"Storage is full; the record could not be saved ({exc})"},
        status_code=507,
    )


async def _core_error(_: Request, exc: Exception) -> JSONResponse:
    if not getattr(exc, "already_handled", False):
        LOG.error("Inventory operation failed: %s", exc)
    return JSONResponse({"detail": str(exc)}, status_code=500)


def create_app(
    root_dir: Optional[str] = None,
    *,
    service: Optional[InventoryService] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the inventory service as a JSON API."""

    if service is None:
        service = build_inventory_service(find_project_root(root_dir))
    svc = service

    @contextlib.asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        await svc.startup()
        yield

    async def health(_: Request) -> JSONResponse:
        store = svc.store
        return JSONResponse(
            {
                "status": "ok",
                "storage_available": svc.persistence.available,
                "db_path": getattr(store, "db_path", None),
            }
        )

    # ---- products ----
    async def products(request: Request) -> JSONResponse:
        user_id = request.path_params["user_id"]
        if request.method == "DELETE":
            await svc.clear_inventory(user_id)
            return JSONResponse({"status": "cleared"})
        items = await svc.get_products(user_id)
        return JSONResponse({"items": [p.to_dict() for p in items], "count": len(items)})

    async def product_detail(request: Request) -> JSONResponse:
        user_id = request.path_params["user_id"]
        product_id = request.path_params["product_id"]
        if request.method == "PATCH":
            updated = await svc.update_product(user_id, product_id, await _json_body(request))
            return JSONResponse(updated.to_dict())
        if request.method == "DELETE":
            await svc.delete_product(user_id, product_id)
            return JSONResponse({"status": "deleted", "id": product_id})
        product = await svc.get_product_by_id(user_id, product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return JSONResponse(product.to_dict())

    # ---- reconcile / finalize ----
    async def price_check(request: Request) -> JSONResponse:
        body = await _json_body(request)
        result = await svc.check_prices(request.path_params["user_id"], body.get("products"))
        return JSONResponse(result.to_dict())

    async def resolve_prices(request: Request) -> JSONResponse:
        body = await _json_body(request)
        raw = body.get("discrepancies") or []
        if not isinstance(raw, list) or not all(isinstance(d, dict) for d in raw):
            raise HTTPException(status_code=400, detail="discrepancies must be a list of objects")
        decisions = body.get("decisions") or {}
        if not isinstance(decisions, dict):
            raise HTTPException(status_code=400, detail="decisions must be an object")
        resolved = resolve_price_discrepancies([ProductPriceDiscrepancy.from_dict(d) for d in raw], decisions)
        return JSONResponse({"products": [p.to_dict() for p in resolved]})

    async def finalize(request: Request) -> JSONResponse:
        body = await _json_body(request)
        extra = {name: body[name] for name in FINALIZE_INVOICE_FIELDS if name in body}
        result = await svc.finalize(
            request.path_params["user_id"],
            body.get("products"),
            body.get("file_name") or "",
            source=body.get("source") or "upload",
            temp_invoice_id=body.get("temp_invoice_id"),
            scan_id=body.get("scan_id"),
            **extra,
        )
        return JSONResponse(result.to_dict())

    # ---- invoices ----
    async def invoices(request: Request) -> JSONResponse:
        user_id = request.path_params["user_id"]
        if request.method == "POST":
            body = await _json_body(request)
            invoice = await svc.create_pending_invoice(
                user_id,
                body.get("file_name") or "",
                body.get("temp_invoice_id"),
                scan_id=body.get("scan_id"),
            )
            return JSONResponse(invoice.to_dict(), status_code=201)
        items = await svc.get_invoices(user_id)
        return JSONResponse({"items": [inv.to_dict() for inv in items], "count": len(items)})

    async def invoice_detail(request: Request) -> JSONResponse:
        user_id = request.path_params["user_id"]
        invoice_id = request.path_params["invoice_id"]
        if request.method == "DELETE":
            await svc.delete_invoice(user_id, invoice_id)
            return JSONResponse({"status": "deleted", "id": invoice_id})
        updated = await svc.update_invoice(user_id, invoice_id, await _json_body(request))
        return JSONResponse(updated.to_dict())

    async def invoice_processing(request: Request) -> JSONResponse:
        invoice = await svc.mark_invoice_processing(
            request.path_params["user_id"], request.path_params["invoice_id"]
        )
        return JSONResponse(invoice.to_dict())

    async def invoice_payment(request: Request) -> JSONResponse:
        body = await _json_body(request)
        invoice = await svc.update_invoice_payment_status(
            request.path_params["user_id"],
            request.path_params["invoice_id"],
            body.get("status") or "",
            body.get("receipt_image_uri"),
        )
        return JSONResponse(invoice.to_dict())

    # ---- scan staging ----
    async def scans(request: Request) -> JSONResponse:
        body = await _json_body(request)
        scan_id = body.get("scan_id") or ScanDataJanitor.new_scan_id(body.get("file_name") or "scan")
        stored = await svc.stage_scan(
            request.path_params["user_id"],
            scan_id,
            raw_scan_result=body.get("raw_scan_result"),
            original_preview_uri=body.get("original_preview_uri"),
            compressed_image_uri=body.get("compressed_image_uri"),
        )
        return JSONResponse({"scan_id": scan_id, "stored": stored}, status_code=201)

    async def scan_detail(request: Request) -> JSONResponse:
        user_id = request.path_params["user_id"]
        scan_id = request.path_params["scan_id"]
        if request.method == "DELETE":
            removed = await svc.clear_session(user_id, scan_id)
            return JSONResponse({"removed": removed})
        return JSONResponse(await svc.load_scan(user_id, scan_id))

    # ---- POS ----
    async def pos_sync(request: Request) -> JSONResponse:
        body = await _json_body(request)
        rows = body.get("rows")
        if not isinstance(rows, list):
            raise HTTPException(status_code=400, detail="rows must be a list")
        result = await svc.sync_pos_inventory(request.path_params["user_id"], request.path_params["system_id"], rows)
        return JSONResponse(result.to_dict())

    async def pos_sync_state(request: Request) -> JSONResponse:
        state = await svc.get_sync_state(request.path_params["user_id"])
        return JSONResponse({"state": state})

    # ---- maintenance ----
    async def sweep(request: Request) -> JSONResponse:
        qp = request.query_params
        removed = await svc.sweep(aggressive=_parse_bool(qp.get("aggressive")), user_id=qp.get("user_id") or None)
        return JSONResponse({"removed": removed})

    user = "/api/users/{user_id:str}"
    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/maintenance/sweep", sweep, methods=["POST"]),
        Route(f"{user}/products", products, methods=["GET", "DELETE"]),
        Route(f"{user}/products/{{product_id:str}}", product_detail, methods=["GET", "PATCH", "DELETE"]),
        Route(f"{user}/price-check", price_check, methods=["POST"]),
        Route(f"{user}/price-decisions", resolve_prices, methods=["POST"]),
        Route(f"{user}/finalize", finalize, methods=["POST"]),
        Route(f"{user}/invoices", invoices, methods=["GET", "POST"]),
        Route(f"{user}/invoices/{{invoice_id:str}}", invoice_detail, methods=["PATCH", "DELETE"]),
        Route(f"{user}/invoices/{{invoice_id:str}}/processing", invoice_processing, methods=["POST"]),
        Route(f"{user}/invoices/{{invoice_id:str}}/payment", invoice_payment, methods=["PUT"]),
        Route(f"{user}/scans", scans, methods=["POST"]),
        Route(f"{user}/scans/{{scan_id:str}}", scan_detail, methods=["GET", "DELETE"]),
        Route(f"{user}/pos/sync-state", pos_sync_state, methods=["GET"]),
        Route(f"{user}/pos/{{system_id:str}}/sync", pos_sync, methods=["POST"]),
    ]

    exception_handlers = {
        ValidationError: _validation_error,
        CapacityExceededError: _capacity_error,
        InvoTrackError: _core_error,
    }
    app = Starlette(debug=False, routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)
    app.state.service = svc

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]
