import pytest

from invotrack.domain.models import Product
from invotrack.inventory.errors import ValidationError
from invotrack.inventory.reconcile import check_prices, resolve_price_discrepancies


def _existing():
    return [Product(id="p1", catalog_number="A1", description="Widget", quantity=7.0, unit_price=10.0)]


def test_changed_unit_price_is_flagged():
    result = check_prices([Product(id=None, catalog_number="A1", quantity=2.0, unit_price=12.5)], _existing())

    assert result.to_save_directly == []
    assert len(result.discrepancies) == 1
    d = result.discrepancies[0]
    assert d.id == "p1"
    assert d.description == "Widget"
    assert d.existing_unit_price == 10.0
    assert d.new_unit_price == 12.5
    assert d.quantity == 2.0


def test_price_within_epsilon_is_not_flagged_and_keeps_stored_price():
    result = check_prices([Product(id=None, catalog_number="A1", quantity=2.0, unit_price=10.0005)], _existing())

    assert result.discrepancies == []
    assert len(result.to_save_directly) == 1
    line = result.to_save_directly[0]
    assert line.unit_price == 10.0
    assert line.id == "p1"
    assert line.quantity == 2.0


def test_zero_incoming_price_and_unknown_products_go_straight_through():
    batch = [
        Product(id=None, catalog_number="A1", quantity=1.0, unit_price=0.0),
        Product(id=None, catalog_number="NEW", quantity=1.0, unit_price=99.0),
    ]

    result = check_prices(batch, _existing())

    assert result.discrepancies == []
    assert [p.catalog_number for p in result.to_save_directly] == ["A1", "NEW"]
    assert result.to_save_directly[0].unit_price == 10.0
    assert result.to_save_directly[1].unit_price == 99.0


def test_check_prices_does_not_mutate_inputs():
    inventory = _existing()
    batch = [Product(id=None, catalog_number="A1", quantity=2.0, unit_price=10.0001)]

    check_prices(batch, inventory)

    assert batch[0].id is None
    assert batch[0].unit_price == 10.0001
    assert inventory[0].quantity == 7.0


def test_resolve_price_discrepancies_decisions():
    discrepancies = check_prices(
        [Product(id=None, catalog_number="A1", quantity=2.0, unit_price=12.5)], _existing()
    ).discrepancies

    kept = resolve_price_discrepancies(discrepancies)
    updated = resolve_price_discrepancies(discrepancies, {"p1": "update_new"})

    assert type(kept[0]) is Product
    assert kept[0].unit_price == 10.0
    assert updated[0].unit_price == 12.5
    assert updated[0].quantity == 2.0

    with pytest.raises(ValidationError):
        resolve_price_discrepancies(discrepancies, {"p1": "maybe"})
