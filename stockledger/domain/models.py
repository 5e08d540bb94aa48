from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Boolean,
    event,
    text,
)
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from stockledger.domain.errors import ImmutableMovement


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class MovementType(str, Enum):
    RECEIPT = "RECEIPT"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


class CheckoutStatus(str, Enum):
    PENDING = "PENDING"
    RESERVED = "RESERVED"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# Catalog tables are owned by the catalog service; this service only reads them.
class Item(Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class Variant(Base):
    __tablename__ = "variants"
    id: Mapped[int] = mapped_column(primary_key=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id"), index=True)
    variant_sku: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    price_adjustment: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class StockRecord(Base):
    """Quantity state of one item or item variant at one warehouse location.

    ``version`` is the optimistic lock counter. It is bumped only by
    StockStore.apply_delta through a conditional UPDATE, never by the ORM.
    """

    __tablename__ = "stock"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_quantity_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_stock_reserved_non_negative"),
        CheckConstraint("reserved_quantity <= quantity", name="ck_stock_reserved_within_quantity"),
        # One record per item/variant, and one per item when there is no variant
        Index(
            "idx_stock_item_variant", "item_id", "variant_id", unique=True,
            sqlite_where=text("variant_id IS NOT NULL"),
            postgresql_where=text("variant_id IS NOT NULL"),
        ),
        Index(
            "idx_stock_item_only", "item_id", unique=True,
            sqlite_where=text("variant_id IS NULL"),
            postgresql_where=text("variant_id IS NULL"),
        ),
        Index("idx_stock_warehouse_location", "warehouse_location"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    # Catalog ids, no FK - the catalog lives in another service
    item_id: Mapped[int] = mapped_column(Integer, index=True)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0)
    warehouse_location: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @validates("quantity", "reserved_quantity")
    def _validate_quantity(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer")
        if value < 0:
            raise ValueError(f"{key} must be >= 0")
        return value

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    @property
    def is_available(self) -> bool:
        return self.available_quantity > 0

    def __repr__(self) -> str:
        return (
            f"<StockRecord id={self.id} item_id={self.item_id} variant_id={self.variant_id} "
            f"quantity={self.quantity} reserved={self.reserved_quantity} version={self.version}>"
        )


class MovementRecord(Base):
    """Append-only audit entry for one stock change.

    previous_quantity/new_quantity track reserved_quantity for RESERVE and
    RELEASE, and on-hand quantity for every other movement type.
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("idx_movements_stock_created", "stock_id", "created_at"),
        Index("idx_movements_type_created", "movement_type", "created_at"),
        # A reservation is closed at most once, a transfer out is paired at most once
        Index(
            "uq_movements_release_id", "release_movement_id", unique=True,
            sqlite_where=text("release_movement_id IS NOT NULL"),
            postgresql_where=text("release_movement_id IS NOT NULL"),
        ),
        Index(
            "uq_movements_related_id", "related_movement_id", unique=True,
            sqlite_where=text("related_movement_id IS NOT NULL"),
            postgresql_where=text("related_movement_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    stock_id: Mapped[int] = mapped_column(ForeignKey("stock.id"), index=True)
    movement_type: Mapped[MovementType] = mapped_column(
        SAEnum(MovementType, native_enum=False, length=20, validate_strings=True), index=True
    )
    quantity_delta: Mapped[int] = mapped_column(Integer)
    previous_quantity: Mapped[int] = mapped_column(Integer)
    new_quantity: Mapped[int] = mapped_column(Integer)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    related_movement_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_movements.id"), nullable=True
    )
    release_movement_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_movements.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    version: Mapped[int] = mapped_column(Integer, default=0)

    @validates("quantity_delta", "previous_quantity", "new_quantity")
    def _validate_int(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer")
        return value

    @validates("movement_type")
    def _validate_type(self, key, value):
        return MovementType(value)

    @property
    def quantity(self) -> int:
        return abs(self.quantity_delta)

    def __repr__(self) -> str:
        return (
            f"<MovementRecord id={self.id} stock_id={self.stock_id} "
            f"type={self.movement_type} delta={self.quantity_delta}>"
        )


@event.listens_for(MovementRecord, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableMovement(target.id, "modified")


@event.listens_for(MovementRecord, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableMovement(target.id, "deleted")


class CheckoutItem(Base):
    __tablename__ = "checkout_items"
    __table_args__ = (
        Index("idx_checkout_customer_status", "customer_id", "status"),
        Index("idx_checkout_status_reserved_at", "status", "reserved_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(100), index=True)
    item_id: Mapped[int] = mapped_column(Integer, index=True)
    variant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stock_id: Mapped[int] = mapped_column(ForeignKey("stock.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    # Price snapshot at checkout time
    price_per_unit: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    reservation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_movements.id"), nullable=True, index=True
    )
    status: Mapped[CheckoutStatus] = mapped_column(
        SAEnum(CheckoutStatus, native_enum=False, length=20, validate_strings=True),
        default=CheckoutStatus.PENDING,
    )
    checkout_reference: Mapped[str] = mapped_column(String(100), index=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @validates("quantity")
    def _validate_quantity(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError("quantity must be an integer >= 1")
        return value

    def __repr__(self) -> str:
        return f"<CheckoutItem id={self.id} status={self.status} reservation_id={self.reservation_id}>"
