"""
Reserve, release and commit stock held against a future sale.

A reservation is the RESERVE movement itself; its id is the reservation id.
It stays open until a RELEASE (cancelled) or SALE (committed) movement points
back at it. Every operation mutates the stock record through
``StockStore.apply_delta`` and appends the matching movement in the same
unit of work.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

from stockledger.application.concurrency import ConcurrencyController
from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import (
    AlreadyCommitted,
    AlreadyReleased,
    InsufficientStock,
    InvalidTransition,
    NotFound,
)
from stockledger.domain.models import CheckoutItem, CheckoutStatus, MovementRecord, MovementType, StockRecord
from stockledger.infrastructure.db import session_scope
from stockledger.infrastructure.movement_ledger import MovementLedger
from stockledger.infrastructure.stock_store import StockStore

logger = get_logger(__name__)

T = TypeVar("T")


class ReservationStatus(str, Enum):
    OPEN = "OPEN"
    RELEASED = "RELEASED"
    COMMITTED = "COMMITTED"


class Reservation(BaseModel):
    reservation_id: int
    stock_id: int
    quantity: int
    checkout_reference: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    status: ReservationStatus
    closing_movement_id: Optional[int] = None
    closed_at: Optional[datetime] = None


class ReservationManager:

    def __init__(self, store: StockStore, ledger: MovementLedger, controller: ConcurrencyController):
        self.store = store
        self.ledger = ledger
        self.controller = controller

    def reserve(
        self,
        stock_id: int,
        quantity: int,
        checkout_reference: Optional[str] = None,
        created_by: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Hold ``quantity`` units of stock ``stock_id``.

        Returns the reservation id. Raises InsufficientStock when fewer units
        are available than requested; that check is repeated on every retry.
        """
        _require_positive(quantity)

        def operation(active: Session) -> int:
            stock = self.store.get_by_id(active, stock_id)
            available = stock.available_quantity
            if available < quantity:
                raise InsufficientStock(stock_id, quantity, available)

            reserved_before = stock.reserved_quantity
            updated = self.store.apply_delta(active, stock_id, 0, quantity, stock.version)
            return self.ledger.append(active, MovementRecord(
                stock_id=stock_id,
                movement_type=MovementType.RESERVE,
                quantity_delta=quantity,
                previous_quantity=reserved_before,
                new_quantity=updated.reserved_quantity,
                reference_number=checkout_reference,
                created_by=created_by,
                notes="Stock reserved",
            ))

        reservation_id = self._execute(operation, "reserve", session)
        logger.info(
            "Stock reserved",
            extra={
                'extra_fields': {
                    'stock_id': stock_id,
                    'quantity': quantity,
                    'reservation_id': reservation_id,
                    'checkout_reference': checkout_reference,
                }
            }
        )
        return reservation_id

    def release(
        self,
        reservation_id: int,
        released_by: Optional[str] = None,
        reason: Optional[str] = None,
        session: Optional[Session] = None,
        checkout_id: Optional[int] = None,
    ) -> int:
        """Give the reserved units back; returns the RELEASE movement id.

        A reservation held by a RESERVED checkout can only be released on
        behalf of that checkout (``checkout_id``), otherwise InvalidTransition.
        """

        def operation(active: Session) -> int:
            reserve, stock = self._open_reservation(active, reservation_id, checkout_id, ReservationStatus.RELEASED)
            reserved_before = stock.reserved_quantity
            updated = self.store.apply_delta(active, stock.id, 0, -reserve.quantity_delta, stock.version)
            return self.ledger.append(active, MovementRecord(
                stock_id=stock.id,
                movement_type=MovementType.RELEASE,
                quantity_delta=-reserve.quantity_delta,
                previous_quantity=reserved_before,
                new_quantity=updated.reserved_quantity,
                reference_number=reserve.reference_number,
                created_by=released_by,
                notes=reason or "Reservation released",
                release_movement_id=reserve.id,
            ))

        movement_id = self._execute(operation, "release", session)
        logger.info(
            "Reservation released",
            extra={'extra_fields': {'reservation_id': reservation_id, 'movement_id': movement_id, 'reason': reason}}
        )
        return movement_id

    def commit(
        self,
        reservation_id: int,
        committed_by: Optional[str] = None,
        reference_number: Optional[str] = None,
        session: Optional[Session] = None,
        checkout_id: Optional[int] = None,
    ) -> int:
        """Turn the reservation into a sale; returns the SALE movement id.

        On-hand and reserved quantity drop together in one ``apply_delta``.
        The checkout guard of ``release`` applies here too.
        """

        def operation(active: Session) -> int:
            reserve, stock = self._open_reservation(active, reservation_id, checkout_id, ReservationStatus.COMMITTED)
            quantity_before = stock.quantity
            amount = reserve.quantity_delta
            updated = self.store.apply_delta(active, stock.id, -amount, -amount, stock.version)
            return self.ledger.append(active, MovementRecord(
                stock_id=stock.id,
                movement_type=MovementType.SALE,
                quantity_delta=-amount,
                previous_quantity=quantity_before,
                new_quantity=updated.quantity,
                reference_number=reference_number or reserve.reference_number,
                created_by=committed_by,
                notes="Reservation committed",
                related_movement_id=reserve.id,
            ))

        movement_id = self._execute(operation, "commit", session)
        logger.info(
            "Reservation committed",
            extra={'extra_fields': {'reservation_id': reservation_id, 'movement_id': movement_id}}
        )
        return movement_id

    def get_reservation(self, reservation_id: int, session: Optional[Session] = None) -> Reservation:
        with session_scope(self.ledger.session_factory, session) as active:
            reserve = self._get_reserve(active, reservation_id)
            closing = self.ledger.find_closing_movement(active, reservation_id)
            status = ReservationStatus.OPEN
            if closing is not None:
                status = (
                    ReservationStatus.RELEASED
                    if closing.movement_type == MovementType.RELEASE
                    else ReservationStatus.COMMITTED
                )
            return Reservation(
                reservation_id=reserve.id,
                stock_id=reserve.stock_id,
                quantity=reserve.quantity_delta,
                checkout_reference=reserve.reference_number,
                created_by=reserve.created_by,
                created_at=reserve.created_at,
                status=status,
                closing_movement_id=closing.id if closing else None,
                closed_at=closing.created_at if closing else None,
            )

    def _execute(self, operation: Callable[[Session], T], name: str, session: Optional[Session]) -> T:
        if session is not None:
            # caller owns the unit of work and any retry
            return operation(session)
        return self.controller.run(operation, name=name)

    def _get_reserve(self, session: Session, reservation_id: int) -> MovementRecord:
        movement = session.get(MovementRecord, reservation_id)
        if movement is None or movement.movement_type != MovementType.RESERVE:
            raise NotFound("Reservation", "id", reservation_id)
        return movement

    def _open_reservation(
        self,
        session: Session,
        reservation_id: int,
        checkout_id: Optional[int],
        target: ReservationStatus,
    ) -> Tuple[MovementRecord, StockRecord]:
        """The RESERVE movement and its stock record, provided nothing closed it yet.

        The stock is read before the closing check: any close committed after
        that read has bumped the version, so the caller's apply_delta fails.
        """
        reserve = self._get_reserve(session, reservation_id)
        stock = self.store.get_by_id(session, reserve.stock_id)
        closing = self.ledger.find_closing_movement(session, reservation_id)
        if closing is not None:
            if closing.movement_type == MovementType.RELEASE:
                raise AlreadyReleased(reservation_id, closing.id)
            raise AlreadyCommitted(reservation_id, closing.id)

        owner = (
            session.query(CheckoutItem)
            .filter(
                CheckoutItem.reservation_id == reservation_id,
                CheckoutItem.status == CheckoutStatus.RESERVED,
            )
            .first()
        )
        if owner is not None and owner.id != checkout_id:
            # the checkout state machine owns this reservation
            logger.warning(
                f"Reservation {reservation_id} is held by checkout {owner.checkout_reference}",
                extra={'extra_fields': {'reservation_id': reservation_id, 'checkout_id': owner.id}}
            )
            raise InvalidTransition(owner.id, owner.status.value, target.value)
        return reserve, stock


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValueError("quantity must be an integer >= 1")
