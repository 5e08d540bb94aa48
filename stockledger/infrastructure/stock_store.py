"""
Stock records and their version-checked mutation.

Every change to ``quantity`` or ``reserved_quantity`` goes through
``StockStore.apply_delta``, a conditional UPDATE on the record's version.
No other code path writes those columns.
"""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import (
    DuplicateResource,
    InvariantViolation,
    NotFound,
    VersionConflict,
)
from stockledger.domain.models import StockRecord, utcnow

logger = get_logger(__name__)


class StockStore:

    def get_by_id(self, session: Session, stock_id: int) -> StockRecord:
        # populate_existing so a retried attempt never sees identity-map leftovers
        stock = session.get(StockRecord, stock_id, populate_existing=True)
        if stock is None:
            raise NotFound("Stock", "id", stock_id)
        return stock

    def get(self, session: Session, item_id: int, variant_id: Optional[int] = None) -> StockRecord:
        stock = self._find(session, item_id, variant_id)
        if stock is None:
            raise NotFound("Stock", "item_id/variant_id", f"{item_id}/{variant_id}")
        return stock

    def list_by_item(self, session: Session, item_id: int) -> List[StockRecord]:
        return (
            session.query(StockRecord)
            .filter(StockRecord.item_id == item_id)
            .order_by(StockRecord.id)
            .populate_existing()
            .all()
        )

    def create(
        self,
        session: Session,
        item_id: int,
        variant_id: Optional[int] = None,
        warehouse_location: Optional[str] = None,
        quantity: int = 0,
    ) -> StockRecord:
        """Insert a stock record at version 0 with nothing reserved."""
        if self._find(session, item_id, variant_id) is not None:
            raise DuplicateResource("Stock", "item_id/variant_id", f"{item_id}/{variant_id}")

        stock = StockRecord(
            item_id=item_id,
            variant_id=variant_id,
            quantity=quantity,
            reserved_quantity=0,
            warehouse_location=warehouse_location,
            version=0,
        )
        session.add(stock)
        try:
            session.flush()
        except IntegrityError as exc:
            # lost the race against a concurrent create for the same key
            raise DuplicateResource("Stock", "item_id/variant_id", f"{item_id}/{variant_id}") from exc
        return stock

    def apply_delta(
        self,
        session: Session,
        stock_id: int,
        quantity_delta: int,
        reserved_delta: int,
        expected_version: int,
    ) -> StockRecord:
        """Compare-and-swap mutation of one stock record.

        Applies both signed deltas and bumps ``version`` by one, only when the
        stored version still equals ``expected_version``.

        Raises:
            NotFound: no record with ``stock_id``.
            VersionConflict: another writer got there first; nothing applied.
            InvariantViolation: the result would break
                ``0 <= reserved_quantity <= quantity``; nothing written.
        """
        current = self.get_by_id(session, stock_id)
        if current.version != expected_version:
            raise VersionConflict("Stock", stock_id, expected_version, current.version)

        new_quantity = current.quantity + quantity_delta
        new_reserved = current.reserved_quantity + reserved_delta
        if new_quantity < 0 or new_reserved < 0 or new_reserved > new_quantity:
            raise InvariantViolation(
                f"Stock {stock_id} mutation (quantity {quantity_delta:+d}, reserved {reserved_delta:+d}) "
                f"would leave quantity={new_quantity}, reserved_quantity={new_reserved}"
            )

        result = session.execute(
            update(StockRecord)
            .where(StockRecord.id == stock_id, StockRecord.version == expected_version)
            .values(
                quantity=new_quantity,
                reserved_quantity=new_reserved,
                version=expected_version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise VersionConflict("Stock", stock_id, expected_version)

        session.refresh(current)
        logger.debug(
            "Stock mutated",
            extra={
                'extra_fields': {
                    'stock_id': stock_id,
                    'quantity_delta': quantity_delta,
                    'reserved_delta': reserved_delta,
                    'version': current.version,
                }
            }
        )
        return current

    def _find(self, session: Session, item_id: int, variant_id: Optional[int]) -> Optional[StockRecord]:
        query = session.query(StockRecord).filter(StockRecord.item_id == item_id)
        if variant_id is None:
            query = query.filter(StockRecord.variant_id.is_(None))
        else:
            query = query.filter(StockRecord.variant_id == variant_id)
        return query.populate_existing().first()
