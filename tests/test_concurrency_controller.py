import pytest

from stockledger.application.concurrency import ConcurrencyController
from stockledger.domain.errors import InsufficientStock, VersionConflict
from stockledger.domain.models import StockRecord
from stockledger.infrastructure.stock_store import StockStore


def test_run_commits_the_operation(make_controller, session_factory, stock):
    store = StockStore()
    controller = make_controller()

    def operation(session):
        current = store.get_by_id(session, stock.id)
        return store.apply_delta(session, stock.id, 5, 0, current.version).version

    assert controller.run(operation, name="receive") == 1
    with session_factory() as session:
        assert session.get(StockRecord, stock.id).quantity == 155


def test_backoff_grows_and_is_capped(session_factory):
    delays = []
    controller = ConcurrencyController(
        session_factory,
        max_attempts=5,
        backoff_seconds=0.1,
        backoff_multiplier=2.0,
        max_backoff_seconds=0.25,
        sleep=delays.append,
    )
    attempts = []

    def always_conflicts(session):
        attempts.append(1)
        raise VersionConflict("Stock", 1, 0, 1)

    with pytest.raises(VersionConflict):
        controller.run(always_conflicts)

    assert len(attempts) == 5
    assert delays == pytest.approx([0.1, 0.2, 0.25, 0.25])
    assert controller.stats() == {"runs": 1, "conflicts": 5, "exhausted": 1}


def test_terminal_errors_are_not_retried_and_roll_back(make_controller, session_factory, stock):
    store = StockStore()
    controller = make_controller()
    attempts = []

    def operation(session):
        attempts.append(1)
        store.apply_delta(session, stock.id, 5, 0, 0)
        raise InsufficientStock(stock.id, 500, 155)

    with pytest.raises(InsufficientStock):
        controller.run(operation)

    assert len(attempts) == 1
    with session_factory() as session:
        current = session.get(StockRecord, stock.id)
        assert (current.quantity, current.version) == (150, 0)


def test_conflicting_writer_rereads_and_succeeds_on_retry(make_controller, session_factory, stock):
    """Two writers start from version 0; the loser retries against version 1."""
    store = StockStore()
    controller = make_controller()
    seen_versions = []

    def competing_write(session):
        return store.apply_delta(session, stock.id, 0, 10, 0)

    def operation(session):
        current = store.get_by_id(session, stock.id)
        seen_versions.append(current.version)
        if len(seen_versions) == 1:
            # another writer commits between our read and our write
            make_controller().run(competing_write)
        return store.apply_delta(session, stock.id, 0, 20, current.version)

    result = controller.run(operation)

    assert seen_versions == [0, 1]
    assert (result.reserved_quantity, result.version) == (30, 2)
    assert controller.stats()["conflicts"] == 1


def test_max_attempts_must_be_positive(session_factory):
    with pytest.raises(ValueError):
        ConcurrencyController(session_factory, max_attempts=0)
