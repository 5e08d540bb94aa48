import asyncio
from datetime import timedelta

from stockledger.application.checkout import CheckoutCoordinator
from stockledger.application.sweeper import ReservationSweeper
from stockledger.domain.models import CheckoutStatus, utcnow


def _shifted_coordinator(ledger, minutes):
    return CheckoutCoordinator(
        ledger.session_factory,
        ledger.controller,
        ledger.reservations,
        ledger.store,
        ledger.catalog,
        ttl_minutes=15,
        clock=lambda: utcnow() + timedelta(minutes=minutes),
    )


def test_sweep_once_expires_stale_checkouts(ledger, catalog, stock):
    checkout = ledger.checkout.checkout("customer-1", catalog["shirt"], 3, variant_id=catalog["red"])

    assert asyncio.run(ReservationSweeper(ledger.checkout).sweep_once()) == 0
    assert asyncio.run(ReservationSweeper(_shifted_coordinator(ledger, 20)).sweep_once()) == 1

    assert ledger.checkout.get(checkout.id).status == CheckoutStatus.EXPIRED
    assert ledger.stock.get_stock(stock.id).reserved_quantity == 0


def test_background_loop_runs_until_stopped(ledger, catalog, stock):
    checkout = ledger.checkout.checkout("customer-1", catalog["shirt"], 3, variant_id=catalog["red"])
    sweeper = ReservationSweeper(_shifted_coordinator(ledger, 20), interval_seconds=0.01)

    async def scenario():
        sweeper.start()
        assert sweeper.running
        for _ in range(300):
            if ledger.checkout.get(checkout.id).status == CheckoutStatus.EXPIRED:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

    asyncio.run(scenario())

    assert not sweeper.running
    assert ledger.checkout.get(checkout.id).status == CheckoutStatus.EXPIRED
    assert ledger.stock.get_stock(stock.id).reserved_quantity == 0
