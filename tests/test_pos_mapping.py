import pytest

from invotrack.inventory.errors import ValidationError
from invotrack.inventory.pos import map_caspit_product, map_hashavshevet_product, map_pos_products, sync_source


def test_sync_source_naming():
    assert sync_source("Caspit") == "caspit_sync"
    with pytest.raises(ValidationError):
        sync_source("  ")


def test_caspit_row_mapping():
    product = map_caspit_product(
        {
            "CatalogNumber": "7001",
            "Name": "Olive oil 750ml",
            "PurchasePrice": "21,90",
            "SalePrice1": "34.90",
            "QtyInStock": 18,
            "Barcode": "7290011111111",
        }
    )

    assert product.catalog_number == "7001"
    assert product.description == "Olive oil 750ml"
    assert product.unit_price == 21.9
    assert product.sale_price == 34.9
    assert product.quantity == 18.0
    assert product.barcode == "7290011111111"


def test_hashavshevet_alternate_field_names():
    product = map_hashavshevet_product(
        {"CatalogNum": "H-9", "Description": "Tahini", "CostPrice": 12, "ListPrice": 19, "QuantityOnHand": "4"}
    )

    assert product.catalog_number == "H-9"
    assert product.description == "Tahini"
    assert product.unit_price == 12.0
    assert product.sale_price == 19.0
    assert product.quantity == 4.0


def test_rows_without_identity_are_skipped():
    rows = [
        {"ItemCode": "", "ItemName": None},
        {"ItemCode": "I-1", "ItemName": "Rice"},
        "not a row",
    ]

    products = map_pos_products("hashavshevet", rows)

    assert [p.catalog_number for p in products] == ["I-1"]
    # no stock figure exported -> nothing is added to the count
    assert products[0].quantity == 0.0


def test_name_only_rows_use_the_sentinel_catalog_number():
    products = map_pos_products("caspit", [{"Name": "Loose bread"}])
    assert products[0].catalog_number == "N/A"


def test_unsupported_system_and_bad_values():
    with pytest.raises(ValidationError, match="Unsupported POS system"):
        map_pos_products("priority", [])
    with pytest.raises(ValidationError, match="caspit row 0"):
        map_pos_products("caspit", [{"CatalogNumber": "1", "QtyInStock": "-3"}])
