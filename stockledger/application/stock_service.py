from typing import List, Optional

from sqlalchemy.orm import Session

from stockledger.application.concurrency import ConcurrencyController
from stockledger.application.schemas import AvailabilityRead, TransferResult, StockRead
from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import InsufficientStock, InvalidLinkage
from stockledger.domain.models import MovementRecord, MovementType, StockRecord
from stockledger.infrastructure.catalog import CatalogReader
from stockledger.infrastructure.db import session_scope
from stockledger.infrastructure.movement_ledger import MovementHistory, MovementLedger
from stockledger.infrastructure.stock_store import StockStore

logger = get_logger(__name__)


class StockService:
    """Receipts, adjustments, transfers and stock lookups.

    Reservations live in ReservationManager; this service covers every other
    way stock changes, with the same one-movement-per-mutation rule.
    """

    def __init__(
        self,
        store: StockStore,
        ledger: MovementLedger,
        controller: ConcurrencyController,
        catalog: CatalogReader,
    ):
        self.store = store
        self.ledger = ledger
        self.controller = controller
        self.catalog = catalog

    @property
    def session_factory(self):
        return self.controller.session_factory

    def create_stock(
        self,
        item_id: int,
        variant_id: Optional[int] = None,
        warehouse_location: Optional[str] = None,
        quantity: int = 0,
        created_by: Optional[str] = None,
    ) -> StockRecord:
        if quantity < 0:
            raise ValueError("quantity must be >= 0")

        def operation(session: Session) -> StockRecord:
            self.catalog.get_item(session, item_id)
            if variant_id is not None:
                self.catalog.get_variant(session, variant_id, item_id=item_id)
            stock = self.store.create(session, item_id, variant_id, warehouse_location, quantity=quantity)
            if quantity > 0:
                self.ledger.append(session, MovementRecord(
                    stock_id=stock.id,
                    movement_type=MovementType.RECEIPT,
                    quantity_delta=quantity,
                    previous_quantity=0,
                    new_quantity=quantity,
                    reference_number="INITIAL_STOCK",
                    created_by=created_by,
                    notes="Initial stock",
                ))
            return stock

        stock = self.controller.run(operation, name="create_stock")
        logger.info(
            "Stock record created",
            extra={'extra_fields': {'stock_id': stock.id, 'item_id': item_id, 'variant_id': variant_id, 'quantity': quantity}}
        )
        return stock

    def receive(
        self,
        stock_id: int,
        quantity: int,
        reference_number: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockRecord:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")

        def operation(session: Session) -> StockRecord:
            stock = self.store.get_by_id(session, stock_id)
            before = stock.quantity
            updated = self.store.apply_delta(session, stock_id, quantity, 0, stock.version)
            self.ledger.append(session, MovementRecord(
                stock_id=stock_id,
                movement_type=MovementType.RECEIPT,
                quantity_delta=quantity,
                previous_quantity=before,
                new_quantity=updated.quantity,
                reference_number=reference_number,
                created_by=created_by,
                notes=notes or "Stock received",
            ))
            return updated

        return self.controller.run(operation, name="receive")

    def adjust(
        self,
        stock_id: int,
        quantity_delta: int,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockRecord:
        """Correct on-hand quantity; reserved units can never be adjusted away."""
        if quantity_delta == 0:
            raise ValueError("quantity_delta must not be zero")

        def operation(session: Session) -> StockRecord:
            stock = self.store.get_by_id(session, stock_id)
            if quantity_delta < 0 and -quantity_delta > stock.available_quantity:
                raise InsufficientStock(stock_id, -quantity_delta, stock.available_quantity)
            before = stock.quantity
            updated = self.store.apply_delta(session, stock_id, quantity_delta, 0, stock.version)
            self.ledger.append(session, MovementRecord(
                stock_id=stock_id,
                movement_type=MovementType.ADJUSTMENT,
                quantity_delta=quantity_delta,
                previous_quantity=before,
                new_quantity=updated.quantity,
                created_by=created_by,
                notes=reason,
            ))
            return updated

        stock = self.controller.run(operation, name="adjust")
        logger.info(
            "Stock adjusted",
            extra={'extra_fields': {'stock_id': stock_id, 'quantity_delta': quantity_delta, 'reason': reason}}
        )
        return stock

    def transfer(
        self,
        source_stock_id: int,
        target_stock_id: int,
        quantity: int,
        reference_number: Optional[str] = None,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TransferResult:
        """Move unreserved units between two stock records in one unit of work."""
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        if source_stock_id == target_stock_id:
            raise InvalidLinkage("Transfer source and target must be different stock records")

        def operation(session: Session) -> TransferResult:
            source = self.store.get_by_id(session, source_stock_id)
            target = self.store.get_by_id(session, target_stock_id)
            if source.available_quantity < quantity:
                raise InsufficientStock(source_stock_id, quantity, source.available_quantity)

            source_before = source.quantity
            source = self.store.apply_delta(session, source_stock_id, -quantity, 0, source.version)
            out_id = self.ledger.append(session, MovementRecord(
                stock_id=source_stock_id,
                movement_type=MovementType.TRANSFER_OUT,
                quantity_delta=-quantity,
                previous_quantity=source_before,
                new_quantity=source.quantity,
                reference_number=reference_number,
                created_by=created_by,
                notes=notes or f"Transfer to stock {target_stock_id}",
            ))

            target_before = target.quantity
            target = self.store.apply_delta(session, target_stock_id, quantity, 0, target.version)
            in_id = self.ledger.append(session, MovementRecord(
                stock_id=target_stock_id,
                movement_type=MovementType.TRANSFER_IN,
                quantity_delta=quantity,
                previous_quantity=target_before,
                new_quantity=target.quantity,
                reference_number=reference_number,
                created_by=created_by,
                notes=notes or f"Transfer from stock {source_stock_id}",
                related_movement_id=out_id,
            ))
            return TransferResult(
                transfer_out_id=out_id,
                transfer_in_id=in_id,
                source=StockRead.model_validate(source),
                target=StockRead.model_validate(target),
            )

        result = self.controller.run(operation, name="transfer")
        logger.info(
            "Stock transferred",
            extra={
                'extra_fields': {
                    'source_stock_id': source_stock_id,
                    'target_stock_id': target_stock_id,
                    'quantity': quantity,
                }
            }
        )
        return result

    def get_stock(self, stock_id: int) -> StockRecord:
        with session_scope(self.session_factory) as session:
            return self.store.get_by_id(session, stock_id)

    def get_stock_for(self, item_id: int, variant_id: Optional[int] = None) -> StockRecord:
        with session_scope(self.session_factory) as session:
            return self.store.get(session, item_id, variant_id)

    def list_stock_for_item(self, item_id: int) -> List[StockRecord]:
        with session_scope(self.session_factory) as session:
            return self.store.list_by_item(session, item_id)

    def get_availability(self, stock_id: int) -> AvailabilityRead:
        stock = self.get_stock(stock_id)
        return AvailabilityRead(
            stock_id=stock.id,
            item_id=stock.item_id,
            variant_id=stock.variant_id,
            quantity=stock.quantity,
            reserved_quantity=stock.reserved_quantity,
            available_quantity=stock.available_quantity,
            is_available=stock.is_available,
        )

    def list_movements(self, stock_id: int, movement_type: Optional[MovementType] = None) -> MovementHistory:
        # fail fast on an unknown stock instead of yielding an empty history
        self.get_stock(stock_id)
        return self.ledger.list_by_stock(stock_id, movement_type)

    def get_movement(self, movement_id: int) -> MovementRecord:
        return self.ledger.get(movement_id)
