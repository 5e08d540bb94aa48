"""
Append-only ledger of stock movements.

Each movement records one quantity change with the tracked field before and
after. Links between movements only point backwards:

* RELEASE.release_movement_id -> the RESERVE it cancels
* SALE.related_movement_id -> the RESERVE it fulfils
* TRANSFER_IN.related_movement_id -> the TRANSFER_OUT it receives

A RESERVE is closed by at most one RELEASE or SALE, and a TRANSFER_OUT is
paired with at most one TRANSFER_IN.
"""

from typing import Callable, Dict, Iterator, Optional

from sqlalchemy import and_, desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import InvalidLinkage, InvariantViolation, NotFound
from stockledger.domain.models import MovementRecord, MovementType, utcnow
from stockledger.infrastructure.db import session_scope

logger = get_logger(__name__)

def _positive(delta: int) -> bool:
    return delta > 0


def _negative(delta: int) -> bool:
    return delta < 0


def _non_zero(delta: int) -> bool:
    return delta != 0


SIGN_RULES: Dict[MovementType, Callable[[int], bool]] = {
    MovementType.RECEIPT: _positive,
    MovementType.RESERVE: _positive,
    MovementType.TRANSFER_IN: _positive,
    MovementType.RELEASE: _negative,
    MovementType.SALE: _negative,
    MovementType.TRANSFER_OUT: _negative,
    MovementType.ADJUSTMENT: _non_zero,
}

# movement type -> (link column it must carry, movement type the link must point at)
REQUIRED_LINKS = {
    MovementType.RELEASE: ("release_movement_id", MovementType.RESERVE),
    MovementType.SALE: ("related_movement_id", MovementType.RESERVE),
    MovementType.TRANSFER_IN: ("related_movement_id", MovementType.TRANSFER_OUT),
}

LINK_COLUMNS = ("release_movement_id", "related_movement_id")


class MovementHistory:
    """Movements of one stock record, newest first.

    Nothing is read until iteration starts. Every iteration opens its own
    session and streams a fresh query, so the history can be walked again and
    reflects movements appended in between.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        stock_id: int,
        movement_type: Optional[MovementType] = None,
        batch_size: int = 100,
    ):
        self._session_factory = session_factory
        self.stock_id = stock_id
        self.movement_type = movement_type
        self.batch_size = batch_size

    def _query(self, session: Session):
        query = session.query(MovementRecord).filter(MovementRecord.stock_id == self.stock_id)
        if self.movement_type is not None:
            query = query.filter(MovementRecord.movement_type == self.movement_type)
        return query

    def __iter__(self) -> Iterator[MovementRecord]:
        with self._session_factory() as session:
            query = (
                self._query(session)
                .order_by(desc(MovementRecord.created_at), desc(MovementRecord.id))
                .yield_per(self.batch_size)
            )
            for movement in query:
                yield movement

    def count(self) -> int:
        with self._session_factory() as session:
            return self._query(session).with_entities(func.count(MovementRecord.id)).scalar()


class MovementLedger:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append(self, session: Session, movement: MovementRecord) -> int:
        """Validate and insert ``movement`` in the caller's unit of work.

        Assigns ``id`` and ``created_at``. Raises InvariantViolation when the
        delta has the wrong sign for its type and InvalidLinkage when its
        links break the ledger rules.
        """
        if movement.id is not None:
            raise InvalidLinkage(f"Movement {movement.id} has already been appended")

        movement_type = MovementType(movement.movement_type)
        if not SIGN_RULES[movement_type](movement.quantity_delta):
            raise InvariantViolation(
                f"{movement_type.value} movement cannot have quantity delta {movement.quantity_delta}"
            )
        self._check_linkage(session, movement, movement_type)

        movement.created_at = utcnow()
        movement.version = 0
        session.add(movement)
        try:
            session.flush()
        except IntegrityError as exc:
            # unique link indexes: a concurrent writer closed or paired the target first
            raise InvalidLinkage(
                f"{movement_type.value} movement for stock {movement.stock_id} violates ledger linkage: {exc.orig}"
            ) from exc

        logger.info(
            f"Movement appended: {movement_type.value}",
            extra={
                'extra_fields': {
                    'movement_id': movement.id,
                    'stock_id': movement.stock_id,
                    'movement_type': movement_type.value,
                    'quantity_delta': movement.quantity_delta,
                    'reference_number': movement.reference_number,
                }
            }
        )
        return movement.id

    def get(self, movement_id: int, session: Optional[Session] = None) -> MovementRecord:
        with session_scope(self.session_factory, session) as active:
            movement = active.get(MovementRecord, movement_id)
            if movement is None:
                raise NotFound("StockMovement", "id", movement_id)
            return movement

    def find_closing_movement(self, session: Session, reservation_id: int) -> Optional[MovementRecord]:
        """The RELEASE or SALE that closed reservation ``reservation_id``, if any."""
        return (
            session.query(MovementRecord)
            .filter(
                or_(
                    and_(
                        MovementRecord.movement_type == MovementType.RELEASE,
                        MovementRecord.release_movement_id == reservation_id,
                    ),
                    and_(
                        MovementRecord.movement_type == MovementType.SALE,
                        MovementRecord.related_movement_id == reservation_id,
                    ),
                )
            )
            .first()
        )

    def find_paired_transfer(self, session: Session, transfer_out_id: int) -> Optional[MovementRecord]:
        return (
            session.query(MovementRecord)
            .filter(
                MovementRecord.movement_type == MovementType.TRANSFER_IN,
                MovementRecord.related_movement_id == transfer_out_id,
            )
            .first()
        )

    def list_by_stock(
        self, stock_id: int, movement_type: Optional[MovementType] = None
    ) -> MovementHistory:
        return MovementHistory(self.session_factory, stock_id, movement_type)

    def _check_linkage(self, session: Session, movement: MovementRecord, movement_type: MovementType) -> None:
        required = REQUIRED_LINKS.get(movement_type)
        if required is None:
            for column in LINK_COLUMNS:
                if getattr(movement, column) is not None:
                    raise InvalidLinkage(f"{movement_type.value} movement must not set {column}")
            return

        column, target_type = required
        other = next(c for c in LINK_COLUMNS if c != column)
        if getattr(movement, other) is not None:
            raise InvalidLinkage(f"{movement_type.value} movement must not set {other}")

        target_id = getattr(movement, column)
        if target_id is None:
            raise InvalidLinkage(
                f"{movement_type.value} movement must reference a {target_type.value} movement via {column}"
            )

        target = session.get(MovementRecord, target_id)
        if target is None or target.movement_type != target_type:
            raise InvalidLinkage(
                f"{movement_type.value} movement references {target_id}, which is not a {target_type.value} movement"
            )

        if target_type == MovementType.RESERVE:
            if target.stock_id != movement.stock_id:
                raise InvalidLinkage(
                    f"Reservation {target_id} belongs to stock {target.stock_id}, not {movement.stock_id}"
                )
            closing = self.find_closing_movement(session, target_id)
            if closing is not None:
                raise InvalidLinkage(
                    f"Reservation {target_id} was already closed by {closing.movement_type.value} movement {closing.id}"
                )
        else:
            if target.stock_id == movement.stock_id:
                raise InvalidLinkage(f"Transfer {target_id} cannot be received by its own source stock")
            paired = self.find_paired_transfer(session, target_id)
            if paired is not None:
                raise InvalidLinkage(f"Transfer {target_id} was already received by movement {paired.id}")
