import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from stockledger.domain.errors import DuplicateResource, InvariantViolation, NotFound, VersionConflict
from stockledger.domain.models import StockRecord
from stockledger.infrastructure.stock_store import StockStore


@pytest.fixture
def store():
    return StockStore()


def test_create_starts_at_version_zero(store, session_factory, catalog):
    with session_factory() as session:
        stock = store.create(session, catalog["mug"], None, "WH-B-02-01", quantity=40)
        session.commit()

    with session_factory() as session:
        found = store.get(session, catalog["mug"])
        assert found.id == stock.id
        assert (found.quantity, found.reserved_quantity, found.version) == (40, 0, 0)
        assert found.available_quantity == 40
        assert found.is_available


def test_get_distinguishes_item_level_and_variant_stock(store, session_factory, catalog):
    with session_factory() as session:
        item_level = store.create(session, catalog["shirt"])
        red = store.create(session, catalog["shirt"], catalog["red"])
        session.commit()

    with session_factory() as session:
        assert store.get(session, catalog["shirt"]).id == item_level.id
        assert store.get(session, catalog["shirt"], catalog["red"]).id == red.id
        with pytest.raises(NotFound):
            store.get(session, catalog["shirt"], catalog["blue"])
        assert [s.id for s in store.list_by_item(session, catalog["shirt"])] == [item_level.id, red.id]


def test_create_rejects_second_record_for_same_key(store, session_factory, catalog):
    with session_factory() as session:
        store.create(session, catalog["mug"])
        store.create(session, catalog["shirt"], catalog["red"])
        session.commit()

    with session_factory() as session:
        with pytest.raises(DuplicateResource):
            store.create(session, catalog["mug"])
        with pytest.raises(DuplicateResource):
            store.create(session, catalog["shirt"], catalog["red"])


def test_partial_unique_indexes_back_the_duplicate_check(session_factory, catalog):
    with session_factory() as session:
        session.add(StockRecord(item_id=catalog["mug"], quantity=1, reserved_quantity=0, version=0))
        session.commit()
    with session_factory() as session:
        session.add(StockRecord(item_id=catalog["mug"], quantity=1, reserved_quantity=0, version=0))
        with pytest.raises(IntegrityError):
            session.commit()


def test_apply_delta_increments_version_by_one(store, session_factory, stock):
    with session_factory() as session:
        updated = store.apply_delta(session, stock.id, 10, 5, expected_version=0)
        session.commit()
    assert (updated.quantity, updated.reserved_quantity, updated.version) == (160, 5, 1)

    with session_factory() as session:
        updated = store.apply_delta(session, stock.id, 0, -5, expected_version=1)
        session.commit()
    assert (updated.quantity, updated.reserved_quantity, updated.version) == (160, 0, 2)


def test_apply_delta_with_stale_version_applies_nothing(store, session_factory, stock):
    with session_factory() as session:
        store.apply_delta(session, stock.id, 0, 10, expected_version=0)
        session.commit()

    with session_factory() as session:
        with pytest.raises(VersionConflict) as exc_info:
            store.apply_delta(session, stock.id, 0, 10, expected_version=0)
        session.rollback()
    assert exc_info.value.expected_version == 0
    assert exc_info.value.actual_version == 1
    assert exc_info.value.retryable

    with session_factory() as session:
        current = store.get_by_id(session, stock.id)
        assert (current.reserved_quantity, current.version) == (10, 1)


@pytest.mark.parametrize(
    "quantity_delta, reserved_delta",
    [
        (0, 151),     # reserved above quantity
        (-151, 0),    # negative quantity
        (0, -1),      # negative reserved
    ],
)
def test_apply_delta_rejects_invariant_breaking_results(store, session_factory, stock, quantity_delta, reserved_delta):
    with session_factory() as session:
        with pytest.raises(InvariantViolation):
            store.apply_delta(session, stock.id, quantity_delta, reserved_delta, expected_version=0)
        session.rollback()

    with session_factory() as session:
        current = store.get_by_id(session, stock.id)
        assert (current.quantity, current.reserved_quantity, current.version) == (150, 0, 0)


def test_apply_delta_rejects_quantity_below_reserved(store, session_factory, stock):
    with session_factory() as session:
        store.apply_delta(session, stock.id, 0, 100, expected_version=0)
        session.commit()

    with session_factory() as session:
        with pytest.raises(InvariantViolation):
            store.apply_delta(session, stock.id, -60, 0, expected_version=1)


def test_apply_delta_on_missing_record(store, session_factory, catalog):
    with session_factory() as session:
        with pytest.raises(NotFound):
            store.apply_delta(session, 999, 1, 0, expected_version=0)


def test_check_constraints_reject_direct_writes(session_factory, stock):
    with session_factory() as session:
        with pytest.raises(IntegrityError):
            session.execute(
                update(StockRecord).where(StockRecord.id == stock.id).values(reserved_quantity=500)
            )
        session.rollback()


def test_model_rejects_negative_quantity_at_construction():
    with pytest.raises(ValueError):
        StockRecord(item_id=1, quantity=-1, reserved_quantity=0)
