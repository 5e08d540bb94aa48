"""
Checkout lifecycle on top of reservations.

    PENDING  -> RESERVED | CANCELLED | EXPIRED
    RESERVED -> FULFILLED | CANCELLED | EXPIRED

FULFILLED, CANCELLED and EXPIRED are terminal. Each transition runs the
reservation step (reserve, commit or release) and the version-checked status
update in one unit of work, so a checkout never shows a state its
reservation does not back.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Optional
import uuid

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session, sessionmaker

from stockledger.application.concurrency import ConcurrencyController
from stockledger.application.reservations import ReservationManager
from stockledger.application.schemas import PaymentReceipt
from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import (
    InvalidPayment,
    InvalidTransition,
    NotFound,
    StockLedgerError,
    VersionConflict,
)
from stockledger.domain.models import CheckoutItem, CheckoutStatus, utcnow
from stockledger.infrastructure.catalog import CatalogReader
from stockledger.infrastructure.db import session_scope
from stockledger.infrastructure.stock_store import StockStore

logger = get_logger(__name__)

TRANSITIONS: Dict[CheckoutStatus, FrozenSet[CheckoutStatus]] = {
    CheckoutStatus.PENDING: frozenset({CheckoutStatus.RESERVED, CheckoutStatus.CANCELLED, CheckoutStatus.EXPIRED}),
    CheckoutStatus.RESERVED: frozenset({CheckoutStatus.FULFILLED, CheckoutStatus.CANCELLED, CheckoutStatus.EXPIRED}),
}

TERMINAL_STATES = frozenset({CheckoutStatus.FULFILLED, CheckoutStatus.CANCELLED, CheckoutStatus.EXPIRED})


def generate_checkout_reference() -> str:
    return f"CO-{utcnow().year}-{uuid.uuid4().hex[:10].upper()}"


def generate_payment_reference() -> str:
    return f"PAY-{uuid.uuid4().hex[:12].upper()}"


class CheckoutCoordinator:

    def __init__(
        self,
        session_factory: sessionmaker,
        controller: ConcurrencyController,
        reservations: ReservationManager,
        store: StockStore,
        catalog: CatalogReader,
        ttl_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.controller = controller
        self.reservations = reservations
        self.store = store
        self.catalog = catalog
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def open_checkout(
        self,
        customer_id: str,
        item_id: int,
        quantity: int,
        variant_id: Optional[int] = None,
        checkout_reference: Optional[str] = None,
    ) -> CheckoutItem:
        checkout = self.controller.run(
            lambda session: self._open(session, customer_id, item_id, quantity, variant_id, checkout_reference),
            name="open_checkout",
        )
        self._log_transition(checkout, None)
        return checkout

    def reserve(self, checkout_id: int) -> CheckoutItem:
        def operation(session: Session) -> CheckoutItem:
            return self._reserve(session, self._load(session, checkout_id))

        checkout = self.controller.run(operation, name="reserve_checkout")
        self._log_transition(checkout, CheckoutStatus.PENDING)
        return checkout

    def checkout(
        self,
        customer_id: str,
        item_id: int,
        quantity: int,
        variant_id: Optional[int] = None,
        checkout_reference: Optional[str] = None,
    ) -> CheckoutItem:
        """Open and reserve in one unit of work.

        InsufficientStock leaves no checkout row and no movement behind.
        """
        def operation(session: Session) -> CheckoutItem:
            checkout = self._open(session, customer_id, item_id, quantity, variant_id, checkout_reference)
            return self._reserve(session, checkout)

        checkout = self.controller.run(operation, name="checkout")
        self._log_transition(checkout, None)
        return checkout

    def pay(
        self,
        checkout_id: int,
        payment_amount,
        processed_by: str,
        payment_reference: Optional[str] = None,
    ) -> PaymentReceipt:
        """Capture payment: commit the reservation and mark the checkout FULFILLED.

        Raises InvalidPayment when ``payment_amount`` is below the total.
        """
        amount = Decimal(str(payment_amount))

        def operation(session: Session) -> PaymentReceipt:
            checkout = self._load(session, checkout_id)
            self._ensure_transition(checkout, CheckoutStatus.FULFILLED)
            total = Decimal(checkout.total_price)
            if amount < total:
                raise InvalidPayment(
                    f"Payment amount {amount} is less than total price {total} for checkout {checkout.id}"
                )

            reference = payment_reference or generate_payment_reference()
            # status update precedes the reservation step; a concurrent transition fails it
            self._transition(session, checkout, CheckoutStatus.FULFILLED, payment_reference=reference)
            sale_id = self.reservations.commit(
                checkout.reservation_id,
                committed_by=processed_by,
                reference_number=reference,
                session=session,
                checkout_id=checkout.id,
            )
            return PaymentReceipt(
                checkout_id=checkout.id,
                checkout_reference=checkout.checkout_reference,
                payment_reference=reference,
                status=checkout.status,
                total_price=float(total),
                amount_paid=float(amount),
                change=float(amount - total),
                sale_movement_id=sale_id,
                processed_by=processed_by,
                processed_at=checkout.updated_at,
            )

        receipt = self.controller.run(operation, name="pay")
        logger.info(
            "Payment processed",
            extra={
                'extra_fields': {
                    'checkout_id': checkout_id,
                    'checkout_reference': receipt.checkout_reference,
                    'payment_reference': receipt.payment_reference,
                    'amount_paid': receipt.amount_paid,
                }
            }
        )
        return receipt

    def cancel(self, checkout_id: int, cancelled_by: Optional[str] = None) -> CheckoutItem:
        previous: List[CheckoutStatus] = []

        def operation(session: Session) -> CheckoutItem:
            checkout = self._load(session, checkout_id)
            previous[:] = [checkout.status]
            return self._close(session, checkout, CheckoutStatus.CANCELLED, cancelled_by, "Checkout cancelled")

        checkout = self.controller.run(operation, name="cancel_checkout")
        self._log_transition(checkout, previous[0])
        return checkout

    def expire_stale(self, as_of: Optional[datetime] = None) -> int:
        """Expire checkouts older than the TTL; returns how many were expired.

        RESERVED checkouts are aged by ``reserved_at`` and have their
        reservation released. PENDING checkouts are aged by ``created_at``.
        A checkout that fails to expire is logged and skipped.
        """
        now = as_of or self._clock()
        cutoff = now - self.ttl
        with self.session_factory() as session:
            candidates = [
                row.id
                for row in session.query(CheckoutItem.id)
                .filter(
                    or_(
                        and_(CheckoutItem.status == CheckoutStatus.RESERVED, CheckoutItem.reserved_at < cutoff),
                        and_(CheckoutItem.status == CheckoutStatus.PENDING, CheckoutItem.created_at < cutoff),
                    )
                )
                .order_by(CheckoutItem.id)
                .all()
            ]

        expired = 0
        for checkout_id in candidates:
            try:
                checkout = self.controller.run(
                    lambda session, cid=checkout_id: self._expire(session, cid, cutoff),
                    name="expire_checkout",
                )
                expired += 1
                self._log_transition(checkout, None)
            except StockLedgerError as exc:
                logger.warning(
                    f"Skipping checkout {checkout_id} during expiry: {exc.message}",
                    extra={'extra_fields': {'checkout_id': checkout_id, 'error_code': exc.code}}
                )

        if candidates:
            logger.info(
                "Reservation sweep finished",
                extra={'extra_fields': {'candidates': len(candidates), 'expired': expired, 'cutoff': cutoff}}
            )
        return expired

    def get(self, checkout_id: int) -> CheckoutItem:
        with session_scope(self.session_factory) as session:
            return self._load(session, checkout_id)

    def list_for_customer(self, customer_id: str, status: Optional[CheckoutStatus] = None) -> List[CheckoutItem]:
        with session_scope(self.session_factory) as session:
            query = session.query(CheckoutItem).filter(CheckoutItem.customer_id == customer_id)
            if status is not None:
                query = query.filter(CheckoutItem.status == status)
            return query.order_by(CheckoutItem.created_at.desc(), CheckoutItem.id.desc()).all()

    def _open(
        self,
        session: Session,
        customer_id: str,
        item_id: int,
        quantity: int,
        variant_id: Optional[int],
        checkout_reference: Optional[str],
    ) -> CheckoutItem:
        item = self.catalog.get_item(session, item_id, active_only=True)
        variant = None
        if variant_id is not None:
            variant = self.catalog.get_variant(session, variant_id, item_id=item_id, active_only=True)
        stock = self.store.get(session, item_id, variant_id)

        price = self.catalog.unit_price(item, variant)
        now = self._clock()
        checkout = CheckoutItem(
            customer_id=customer_id,
            item_id=item_id,
            variant_id=variant_id,
            stock_id=stock.id,
            quantity=quantity,
            price_per_unit=price,
            total_price=price * quantity,
            status=CheckoutStatus.PENDING,
            checkout_reference=checkout_reference or generate_checkout_reference(),
            version=0,
            created_at=now,
            updated_at=now,
        )
        session.add(checkout)
        session.flush()
        return checkout

    def _reserve(self, session: Session, checkout: CheckoutItem) -> CheckoutItem:
        self._ensure_transition(checkout, CheckoutStatus.RESERVED)
        reservation_id = self.reservations.reserve(
            checkout.stock_id,
            checkout.quantity,
            checkout_reference=checkout.checkout_reference,
            created_by=checkout.customer_id,
            session=session,
        )
        return self._transition(
            session, checkout, CheckoutStatus.RESERVED,
            reservation_id=reservation_id, reserved_at=self._clock(),
        )

    def _expire(self, session: Session, checkout_id: int, cutoff: datetime) -> CheckoutItem:
        checkout = self._load(session, checkout_id)
        aged_at = checkout.reserved_at if checkout.status == CheckoutStatus.RESERVED else checkout.created_at
        if checkout.status in TERMINAL_STATES or aged_at is None or aged_at >= cutoff:
            raise InvalidTransition(checkout.id, checkout.status.value, CheckoutStatus.EXPIRED.value)
        return self._close(session, checkout, CheckoutStatus.EXPIRED, "reservation-sweeper", "Reservation expired")

    def _close(
        self,
        session: Session,
        checkout: CheckoutItem,
        target: CheckoutStatus,
        actor: Optional[str],
        reason: str,
    ) -> CheckoutItem:
        holds_reservation = checkout.status == CheckoutStatus.RESERVED and checkout.reservation_id is not None
        self._transition(session, checkout, target)
        if holds_reservation:
            self.reservations.release(
                checkout.reservation_id, released_by=actor, reason=reason, session=session, checkout_id=checkout.id
            )
        return checkout

    def _load(self, session: Session, checkout_id: int) -> CheckoutItem:
        checkout = session.get(CheckoutItem, checkout_id, populate_existing=True)
        if checkout is None:
            raise NotFound("CheckoutItem", "id", checkout_id)
        return checkout

    @staticmethod
    def _ensure_transition(checkout: CheckoutItem, target: CheckoutStatus) -> None:
        if target not in TRANSITIONS.get(checkout.status, frozenset()):
            raise InvalidTransition(checkout.id, checkout.status.value, target.value)

    def _transition(self, session: Session, checkout: CheckoutItem, target: CheckoutStatus, **values) -> CheckoutItem:
        """Version-checked status change; VersionConflict when ``checkout`` is stale."""
        self._ensure_transition(checkout, target)
        expected = checkout.version
        result = session.execute(
            update(CheckoutItem)
            .where(CheckoutItem.id == checkout.id, CheckoutItem.version == expected)
            .values(status=target, version=expected + 1, updated_at=self._clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise VersionConflict("CheckoutItem", checkout.id, expected)
        session.refresh(checkout)
        return checkout

    def _log_transition(self, checkout: CheckoutItem, previous: Optional[CheckoutStatus]) -> None:
        logger.info(
            f"Checkout {checkout.checkout_reference} is {checkout.status.value}",
            extra={
                'extra_fields': {
                    'checkout_id': checkout.id,
                    'checkout_reference': checkout.checkout_reference,
                    'from_status': previous.value if previous else None,
                    'to_status': checkout.status.value,
                    'reservation_id': checkout.reservation_id,
                }
            }
        )
