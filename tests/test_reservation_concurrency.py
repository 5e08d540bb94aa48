from concurrent.futures import ThreadPoolExecutor
import threading

from stockledger.application.concurrency import ConcurrencyController
from stockledger.application.reservations import ReservationManager
from stockledger.domain.errors import InsufficientStock, VersionConflict
from stockledger.domain.models import MovementType
from stockledger.infrastructure.stock_store import StockStore


def _run_concurrently(count, fn):
    barrier = threading.Barrier(count)

    def worker(index):
        barrier.wait()
        return fn(index)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


def test_twenty_concurrent_reservations_never_oversell(ledger, catalog, make_controller):
    stock = ledger.stock.create_stock(item_id=catalog["mug"], warehouse_location="WH-C-01-01", quantity=100)
    # each conflict means some other reservation committed, so 10 successes bound the retries
    controller = make_controller(max_attempts=25)
    manager = ReservationManager(ledger.store, ledger.ledger, controller)

    def reserve(index):
        try:
            return manager.reserve(stock.id, 10, f"CO-{index}")
        except InsufficientStock:
            return None

    results = _run_concurrently(20, reserve)

    succeeded = [r for r in results if r is not None]
    assert len(succeeded) == 10
    assert len(set(succeeded)) == 10

    final = ledger.stock.get_stock(stock.id)
    assert (final.quantity, final.reserved_quantity, final.version) == (100, 100, 10)
    reserves = list(ledger.ledger.list_by_stock(stock.id, MovementType.RESERVE))
    assert sorted(m.id for m in reserves) == sorted(succeeded)
    assert sorted(m.new_quantity for m in reserves) == list(range(10, 101, 10))


def test_twenty_concurrent_reservations_with_default_retry_policy(ledger, catalog, session_factory):
    stock = ledger.stock.create_stock(item_id=catalog["mug"], warehouse_location="WH-C-01-02", quantity=100)
    controller = ConcurrencyController(session_factory)
    manager = ReservationManager(ledger.store, ledger.ledger, controller)

    def reserve(index):
        try:
            return manager.reserve(stock.id, 10, f"CO-{index}")
        except (InsufficientStock, VersionConflict) as exc:
            return type(exc).__name__

    results = _run_concurrently(20, reserve)

    succeeded = [r for r in results if isinstance(r, int)]
    failed = [r for r in results if not isinstance(r, int)]
    assert 1 <= len(succeeded) <= 10
    assert len(set(succeeded)) == len(succeeded)
    assert set(failed) <= {"InsufficientStock", "VersionConflict"}
    assert len(succeeded) + len(failed) == 20

    final = ledger.stock.get_stock(stock.id)
    assert (final.quantity, final.reserved_quantity, final.version) == (100, 10 * len(succeeded), len(succeeded))
    reserves = list(ledger.ledger.list_by_stock(stock.id, MovementType.RESERVE))
    assert sorted(m.id for m in reserves) == sorted(succeeded)
    assert controller.stats()["exhausted"] == failed.count("VersionConflict")


def test_concurrent_release_of_one_reservation_happens_once(ledger, stock, make_controller):
    reservation_id = ledger.reservations.reserve(stock.id, 40, "CO-1")
    manager = ReservationManager(ledger.store, ledger.ledger, make_controller(max_attempts=10))

    def release(index):
        try:
            manager.release(reservation_id)
            return "released"
        except Exception as exc:
            return type(exc).__name__

    outcomes = _run_concurrently(5, release)

    assert outcomes.count("released") == 1
    assert outcomes.count("AlreadyReleased") == 4
    final = ledger.stock.get_stock(stock.id)
    assert final.reserved_quantity == 0
    assert final.version == 2


def test_concurrent_apply_delta_with_same_expected_version(session_factory, stock):
    """Exactly one of two writers holding version 0 wins."""
    store = StockStore()

    def write(index):
        with session_factory() as session:
            try:
                store.apply_delta(session, stock.id, 0, 5, expected_version=0)
                session.commit()
                return "ok"
            except Exception as exc:
                session.rollback()
                return type(exc).__name__

    outcomes = _run_concurrently(2, write)

    assert sorted(outcomes) == ["VersionConflict", "ok"]
    with session_factory() as session:
        current = store.get_by_id(session, stock.id)
        assert (current.reserved_quantity, current.version) == (5, 1)
