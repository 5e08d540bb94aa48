import random

import pytest

from stockledger.application.reservations import ReservationStatus
from stockledger.domain.errors import AlreadyCommitted, AlreadyReleased, InsufficientStock, NotFound
from stockledger.domain.models import MovementType


def test_reserve_then_commit_scenario(ledger, stock):
    assert (stock.quantity, stock.reserved_quantity, stock.version) == (150, 0, 0)

    reservation_id = ledger.reservations.reserve(stock.id, 50, "CO-1")

    current = ledger.stock.get_stock(stock.id)
    assert (current.quantity, current.reserved_quantity, current.version) == (150, 50, 1)
    reserve = ledger.ledger.get(reservation_id)
    assert reserve.movement_type == MovementType.RESERVE
    assert reserve.quantity_delta == 50
    assert (reserve.previous_quantity, reserve.new_quantity) == (0, 50)
    assert reserve.reference_number == "CO-1"

    sale_id = ledger.reservations.commit(reservation_id)

    current = ledger.stock.get_stock(stock.id)
    assert (current.quantity, current.reserved_quantity, current.version) == (100, 0, 2)
    sale = ledger.ledger.get(sale_id)
    assert sale.movement_type == MovementType.SALE
    assert sale.quantity_delta == -50
    assert sale.related_movement_id == reservation_id
    assert (sale.previous_quantity, sale.new_quantity) == (150, 100)


def test_reserve_release_round_trip(ledger, stock):
    ledger.reservations.reserve(stock.id, 20, "CO-0")
    before = ledger.stock.get_stock(stock.id).reserved_quantity

    reservation_id = ledger.reservations.reserve(stock.id, 50, "CO-1")
    release_id = ledger.reservations.release(reservation_id, released_by="operator", reason="customer left")

    assert ledger.stock.get_stock(stock.id).reserved_quantity == before
    history = list(ledger.ledger.list_by_stock(stock.id))
    assert [m.movement_type for m in history[:2]] == [MovementType.RELEASE, MovementType.RESERVE]
    release = history[0]
    assert release.id == release_id
    assert release.release_movement_id == reservation_id
    assert release.quantity_delta == -50
    assert release.notes == "customer left"
    assert (release.previous_quantity, release.new_quantity) == (70, 20)


def test_second_release_fails_and_decrements_once(ledger, stock):
    reservation_id = ledger.reservations.reserve(stock.id, 30, "CO-1")
    release_id = ledger.reservations.release(reservation_id)

    with pytest.raises(AlreadyReleased) as exc_info:
        ledger.reservations.release(reservation_id)

    assert exc_info.value.release_movement_id == release_id
    current = ledger.stock.get_stock(stock.id)
    assert current.reserved_quantity == 0
    assert current.version == 2
    assert ledger.ledger.list_by_stock(stock.id, MovementType.RELEASE).count() == 1


def test_closed_reservations_reject_further_transitions(ledger, stock):
    released = ledger.reservations.reserve(stock.id, 10, "CO-1")
    ledger.reservations.release(released)
    with pytest.raises(AlreadyReleased):
        ledger.reservations.commit(released)

    committed = ledger.reservations.reserve(stock.id, 10, "CO-2")
    ledger.reservations.commit(committed)
    with pytest.raises(AlreadyCommitted):
        ledger.reservations.commit(committed)
    with pytest.raises(AlreadyCommitted):
        ledger.reservations.release(committed)

    current = ledger.stock.get_stock(stock.id)
    assert (current.quantity, current.reserved_quantity) == (140, 0)


def test_insufficient_stock_is_terminal_and_writes_nothing(ledger, stock):
    ledger.reservations.reserve(stock.id, 120, "CO-1")

    with pytest.raises(InsufficientStock) as exc_info:
        ledger.reservations.reserve(stock.id, 40, "CO-2")

    assert exc_info.value.requested == 40
    assert exc_info.value.available == 30
    assert exc_info.value.code == "INSUFFICIENT_STOCK"
    current = ledger.stock.get_stock(stock.id)
    assert (current.reserved_quantity, current.version) == (120, 1)
    assert ledger.ledger.list_by_stock(stock.id, MovementType.RESERVE).count() == 1
    assert ledger.controller.stats()["conflicts"] == 0


def test_unknown_or_non_reserve_ids_are_not_found(ledger, stock):
    with pytest.raises(NotFound):
        ledger.reservations.release(9999)

    receipt = next(iter(ledger.ledger.list_by_stock(stock.id, MovementType.RECEIPT)))
    with pytest.raises(NotFound):
        ledger.reservations.commit(receipt.id)
    with pytest.raises(NotFound):
        ledger.reservations.get_reservation(receipt.id)


def test_reserve_rejects_non_positive_quantity(ledger, stock):
    with pytest.raises(ValueError):
        ledger.reservations.reserve(stock.id, 0, "CO-1")


def test_get_reservation_reports_status(ledger, stock):
    open_id = ledger.reservations.reserve(stock.id, 5, "CO-1", created_by="customer-1")
    released_id = ledger.reservations.reserve(stock.id, 5, "CO-2")
    committed_id = ledger.reservations.reserve(stock.id, 5, "CO-3")
    release_id = ledger.reservations.release(released_id)
    sale_id = ledger.reservations.commit(committed_id)

    opened = ledger.reservations.get_reservation(open_id)
    assert opened.status == ReservationStatus.OPEN
    assert opened.quantity == 5
    assert opened.created_by == "customer-1"
    assert opened.closing_movement_id is None

    released = ledger.reservations.get_reservation(released_id)
    assert (released.status, released.closing_movement_id) == (ReservationStatus.RELEASED, release_id)

    committed = ledger.reservations.get_reservation(committed_id)
    assert (committed.status, committed.closing_movement_id) == (ReservationStatus.COMMITTED, sale_id)


def test_caller_owned_session_is_not_committed(ledger, session_factory, stock):
    with session_factory() as session:
        ledger.reservations.reserve(stock.id, 25, "CO-1", session=session)
        session.rollback()

    current = ledger.stock.get_stock(stock.id)
    assert (current.reserved_quantity, current.version) == (0, 0)
    assert ledger.ledger.list_by_stock(stock.id, MovementType.RESERVE).count() == 0


def test_invariant_holds_across_random_histories(ledger, stock):
    rng = random.Random(1234)
    open_reservations = []
    for _ in range(60):
        action = rng.choice(["reserve", "release", "commit"])
        try:
            if action == "reserve" or not open_reservations:
                open_reservations.append(ledger.reservations.reserve(stock.id, rng.randint(1, 40), "CO-R"))
            else:
                reservation_id = open_reservations.pop(rng.randrange(len(open_reservations)))
                if action == "release":
                    ledger.reservations.release(reservation_id)
                else:
                    ledger.reservations.commit(reservation_id)
        except InsufficientStock:
            pass

        current = ledger.stock.get_stock(stock.id)
        assert 0 <= current.reserved_quantity <= current.quantity

    open_total = sum(ledger.reservations.get_reservation(rid).quantity for rid in open_reservations)
    assert ledger.stock.get_stock(stock.id).reserved_quantity == open_total
