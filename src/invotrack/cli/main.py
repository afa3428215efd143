from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Sequence

from ..inventory import InventoryService, InvoTrackError, build_inventory_service
from ..logging import get_logger
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _service() -> InventoryService:
    return build_inventory_service(os.getcwd())


def _load_json(path: str) -> Any:
    with open(expand_abs(path), "r", encoding="utf-8") as f:
        return json.load(f)


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _products_from_file(path: str) -> Any:
    data = _load_json(path)
    if isinstance(data, dict):
        return data.get("products")
    return data


def _add_user_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--user", default=os.environ.get("INVOTRACK_USER"), help="User id (defaults to $INVOTRACK_USER)")


def _handle_init(_: argparse.Namespace) -> int:
    svc = _service()
    path = getattr(svc.store, "db_path", None)
    LOG.info(f"Inventory store ready at: {path}")
    print(path)
    return 0


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..inventory.frontend.app import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    app = create_app(root_dir=os.getcwd(), allow_origins=allow_origins)
    uvicorn.run(
        app,
        host=ns.host,
        port=ns.port,
        log_level=ns.log_level,
    )
    return 0


def _handle_products(ns: argparse.Namespace) -> int:
    items = asyncio.run(_service().get_products(ns.user))
    _print([p.to_dict() for p in items])
    return 0


def _handle_invoices(ns: argparse.Namespace) -> int:
    items = asyncio.run(_service().get_invoices(ns.user))
    _print([inv.to_dict() for inv in items])
    return 0


def _handle_check_prices(ns: argparse.Namespace) -> int:
    result = asyncio.run(_service().check_prices(ns.user, _products_from_file(ns.file)))
    _print(result.to_dict())
    return 0


def _handle_import(ns: argparse.Namespace) -> int:
    file_name = ns.file_name or os.path.basename(ns.file)
    result = asyncio.run(
        _service().finalize(
            ns.user,
            _products_from_file(ns.file),
            file_name,
            source=ns.source,
            temp_invoice_id=ns.temp_invoice_id,
            scan_id=ns.scan_id,
            invoice_number=ns.invoice_number,
            supplier_name=ns.supplier,
            extracted_total=ns.total,
        )
    )
    if result.inventory_pruned:
        LOG.warning("Inventory was over capacity; lowest-quantity products were dropped.")
    _print(result.to_dict())
    return 1 if result.failed_lines else 0


def _handle_pos_sync(ns: argparse.Namespace) -> int:
    data = _load_json(ns.file)
    rows = data.get("rows") if isinstance(data, dict) else data
    result = asyncio.run(_service().sync_pos_inventory(ns.user, ns.system, rows or []))
    _print(result.to_dict())
    return 0


def _handle_sweep(ns: argparse.Namespace) -> int:
    removed = asyncio.run(_service().sweep(aggressive=ns.aggressive, user_id=ns.user))
    print(removed)
    return 0


def _handle_clear_session(ns: argparse.Namespace) -> int:
    removed = asyncio.run(_service().clear_session(ns.user, ns.scan_id))
    print(removed)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="invotrack",
        description="Inventory reconciliation and persistence toolkit.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create/ensure the inventory store exists")
    init.set_defaults(handler=_handle_init)

    serve = subparsers.add_parser("serve", help="Run the inventory JSON API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)

    products = subparsers.add_parser("products", help="List the inventory of a user")
    _add_user_arg(products)
    products.set_defaults(handler=_handle_products)

    invoices = subparsers.add_parser("invoices", help="List the invoice history of a user (newest first)")
    _add_user_arg(invoices)
    invoices.set_defaults(handler=_handle_invoices)

    check = subparsers.add_parser("check-prices", help="Report unit-price discrepancies for a batch (no writes)")
    _add_user_arg(check)
    check.add_argument("--file", required=True, help="JSON file: list of product lines or {\"products\": [...]}")
    check.set_defaults(handler=_handle_check_prices)

    imp = subparsers.add_parser("import", help="Finalize a batch of product lines into inventory")
    _add_user_arg(imp)
    imp.add_argument("--file", required=True, help="JSON file: list of product lines or {\"products\": [...]}")
    imp.add_argument("--file-name", help="Document name for the invoice record (default: the JSON file name)")
    imp.add_argument("--source", default="upload", help="'upload' or '<system>_sync'")
    imp.add_argument("--temp-invoice-id")
    imp.add_argument("--scan-id")
    imp.add_argument("--invoice-number")
    imp.add_argument("--supplier")
    imp.add_argument("--total", help="Extracted invoice total; overrides the computed sum when numeric")
    imp.set_defaults(handler=_handle_import)

    pos = subparsers.add_parser("pos-sync", help="Merge exported POS catalog rows into inventory")
    _add_user_arg(pos)
    pos.add_argument("--system", required=True, choices=["caspit", "hashavshevet"])
    pos.add_argument("--file", required=True, help="JSON file: list of POS rows or {\"rows\": [...]}")
    pos.set_defaults(handler=_handle_pos_sync)

    sweep = subparsers.add_parser("sweep", help="Remove stale scan staging entries")
    sweep.add_argument("--user", help="Restrict the sweep to one user id")
    sweep.add_argument("--aggressive", action="store_true", help="Also remove entries without a timestamp")
    sweep.set_defaults(handler=_handle_sweep)

    clear = subparsers.add_parser("clear-session", help="Remove the staging entries of one scan")
    _add_user_arg(clear)
    clear.add_argument("--scan-id", required=True)
    clear.set_defaults(handler=_handle_clear_session)

    args = parser.parse_args(provided)
    try:
        code = args.handler(args)
    except InvoTrackError as exc:
        LOG.error(f"{args.command} failed: {exc}")
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
