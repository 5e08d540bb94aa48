import pytest

from stockledger.domain.errors import DuplicateResource, InsufficientStock, InvalidLinkage, NotFound
from stockledger.domain.models import MovementType


def test_create_stock_writes_initial_receipt(ledger, catalog, stock):
    assert (stock.quantity, stock.reserved_quantity, stock.version) == (150, 0, 0)
    assert stock.warehouse_location == "WH-A-01-01"

    history = list(ledger.stock.list_movements(stock.id))
    assert len(history) == 1
    receipt = history[0]
    assert receipt.movement_type == MovementType.RECEIPT
    assert receipt.reference_number == "INITIAL_STOCK"
    assert (receipt.quantity_delta, receipt.previous_quantity, receipt.new_quantity) == (150, 0, 150)
    assert receipt.created_by == "warehouse-admin"


def test_create_empty_stock_writes_no_movement(ledger, catalog):
    empty = ledger.stock.create_stock(item_id=catalog["mug"])
    assert empty.quantity == 0
    assert ledger.stock.list_movements(empty.id).count() == 0


def test_create_stock_rejects_duplicates_and_unknown_catalog_rows(ledger, catalog, stock):
    with pytest.raises(DuplicateResource):
        ledger.stock.create_stock(item_id=catalog["shirt"], variant_id=catalog["red"], quantity=5)
    with pytest.raises(NotFound):
        ledger.stock.create_stock(item_id=9999)
    with pytest.raises(NotFound):
        ledger.stock.create_stock(item_id=catalog["mug"], variant_id=catalog["blue"])
    with pytest.raises(ValueError):
        ledger.stock.create_stock(item_id=catalog["mug"], quantity=-1)

    assert [s.id for s in ledger.stock.list_stock_for_item(catalog["shirt"])] == [stock.id]
    assert ledger.stock.list_stock_for_item(catalog["mug"]) == []


def test_receive_adds_on_hand_quantity(ledger, stock):
    updated = ledger.stock.receive(stock.id, 25, reference_number="PO-1001", created_by="receiving")

    assert (updated.quantity, updated.reserved_quantity, updated.version) == (175, 0, 1)
    receipt = next(iter(ledger.stock.list_movements(stock.id, MovementType.RECEIPT)))
    assert receipt.reference_number == "PO-1001"
    assert (receipt.previous_quantity, receipt.new_quantity) == (150, 175)


def test_adjust_up_and_down(ledger, stock):
    ledger.stock.adjust(stock.id, 10, reason="cycle count")
    updated = ledger.stock.adjust(stock.id, -30, reason="damaged")

    assert updated.quantity == 130
    adjustments = list(ledger.stock.list_movements(stock.id, MovementType.ADJUSTMENT))
    assert [m.quantity_delta for m in adjustments] == [-30, 10]
    assert adjustments[0].notes == "damaged"


def test_adjust_cannot_remove_reserved_units(ledger, stock):
    ledger.reservations.reserve(stock.id, 100, "CO-1")

    with pytest.raises(InsufficientStock) as exc_info:
        ledger.stock.adjust(stock.id, -51, reason="shrinkage")

    assert exc_info.value.available == 50
    assert ledger.stock.adjust(stock.id, -50, reason="shrinkage").quantity == 100
    with pytest.raises(ValueError):
        ledger.stock.adjust(stock.id, 0)


def test_transfer_moves_unreserved_units(ledger, catalog, stock):
    target = ledger.stock.create_stock(item_id=catalog["shirt"], variant_id=catalog["blue"], quantity=5)
    ledger.reservations.reserve(stock.id, 100, "CO-1")

    result = ledger.stock.transfer(stock.id, target.id, 40, reference_number="TR-1")

    assert (result.source.quantity, result.source.reserved_quantity) == (110, 100)
    assert result.target.quantity == 45
    transfer_in = ledger.stock.get_movement(result.transfer_in_id)
    assert transfer_in.movement_type == MovementType.TRANSFER_IN
    assert transfer_in.related_movement_id == result.transfer_out_id
    assert ledger.stock.get_movement(result.transfer_out_id).quantity_delta == -40

    with pytest.raises(InsufficientStock):
        ledger.stock.transfer(stock.id, target.id, 11)
    with pytest.raises(InvalidLinkage):
        ledger.stock.transfer(stock.id, stock.id, 1)
    with pytest.raises(NotFound):
        ledger.stock.transfer(stock.id, 9999, 1)
    assert ledger.stock.get_stock(stock.id).quantity == 110


def test_availability_and_lookup(ledger, catalog, stock):
    ledger.reservations.reserve(stock.id, 150, "CO-1")

    availability = ledger.stock.get_availability(stock.id)
    assert availability.available_quantity == 0
    assert availability.is_available is False
    assert ledger.stock.get_stock_for(catalog["shirt"], catalog["red"]).id == stock.id
    with pytest.raises(NotFound):
        ledger.stock.get_stock_for(catalog["shirt"])


def test_unknown_stock_and_movement(ledger):
    with pytest.raises(NotFound):
        ledger.stock.list_movements(9999)
    with pytest.raises(NotFound):
        ledger.stock.get_stock(9999)
    with pytest.raises(NotFound):
        ledger.stock.get_movement(9999)
