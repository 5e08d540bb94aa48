from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from stockledger.application.checkout import CheckoutCoordinator
from stockledger.application.concurrency import ConcurrencyController
from stockledger.application.reservations import ReservationManager
from stockledger.application.stock_service import StockService
from stockledger.application.sweeper import ReservationSweeper
from stockledger.core_settings import Settings
from stockledger.domain.models import CheckoutItem, MovementRecord
from stockledger.infrastructure.catalog import CatalogReader
from stockledger.infrastructure.movement_ledger import MovementLedger
from stockledger.infrastructure.stock_store import StockStore


class StockLedger:
    """All ledger components wired to one session factory."""

    def __init__(self, session_factory: sessionmaker, settings: Settings, controller: Optional[ConcurrencyController] = None):
        self.session_factory = session_factory
        self.settings = settings
        self.store = StockStore()
        self.catalog = CatalogReader()
        self.ledger = MovementLedger(session_factory)
        self.controller = controller or ConcurrencyController.from_settings(session_factory, settings)
        self.reservations = ReservationManager(self.store, self.ledger, self.controller)
        self.stock = StockService(self.store, self.ledger, self.controller, self.catalog)
        self.checkout = CheckoutCoordinator(
            session_factory,
            self.controller,
            self.reservations,
            self.store,
            self.catalog,
            ttl_minutes=settings.RESERVATION_TTL_MINUTES,
        )

    def build_sweeper(self) -> ReservationSweeper:
        return ReservationSweeper(self.checkout, self.settings.RESERVATION_SWEEP_INTERVAL_SECONDS)

    def metrics(self) -> Dict[str, Any]:
        """Counters for the /metrics endpoint."""
        with self.session_factory() as session:
            movements = dict(
                session.query(MovementRecord.movement_type, func.count(MovementRecord.id))
                .group_by(MovementRecord.movement_type)
                .all()
            )
            checkouts = dict(
                session.query(CheckoutItem.status, func.count(CheckoutItem.id))
                .group_by(CheckoutItem.status)
                .all()
            )
        return {
            "movements": {getattr(key, "value", key): count for key, count in movements.items()},
            "checkouts": {getattr(key, "value", key): count for key, count in checkouts.items()},
            "optimistic_lock": self.controller.stats(),
        }
