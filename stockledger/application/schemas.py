from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from stockledger.domain.models import CheckoutStatus, MovementType

LOCATION_PATTERN = r"^[A-Z0-9-]+$"


class StockCreate(BaseModel):
    item_id: int = Field(..., ge=1)
    variant_id: Optional[int] = Field(None, ge=1)
    warehouse_location: Optional[str] = Field(None, max_length=50, pattern=LOCATION_PATTERN)
    quantity: int = Field(0, ge=0)
    created_by: Optional[str] = Field(None, max_length=100)


class StockReceive(BaseModel):
    quantity: int = Field(..., ge=1)
    reference_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)
    created_by: Optional[str] = Field(None, max_length=100)


class StockAdjust(BaseModel):
    quantity_delta: int
    reason: str = Field(..., min_length=1, max_length=500)
    created_by: Optional[str] = Field(None, max_length=100)

    @field_validator("quantity_delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("quantity_delta must not be zero")
        return value


class StockReserve(BaseModel):
    quantity: int = Field(..., ge=1)
    checkout_reference: Optional[str] = Field(None, max_length=100)
    created_by: Optional[str] = Field(None, max_length=100)


class ReservationRelease(BaseModel):
    released_by: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class ReservationCommit(BaseModel):
    committed_by: Optional[str] = Field(None, max_length=100)
    reference_number: Optional[str] = Field(None, max_length=100)


class StockTransfer(BaseModel):
    source_stock_id: int = Field(..., ge=1)
    target_stock_id: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1)
    reference_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)
    created_by: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def _distinct_stock(self):
        if self.source_stock_id == self.target_stock_id:
            raise ValueError("source_stock_id and target_stock_id must differ")
        return self


class StockRead(BaseModel):
    id: int
    item_id: int
    variant_id: Optional[int] = None
    quantity: int
    reserved_quantity: int
    available_quantity: int
    warehouse_location: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AvailabilityRead(BaseModel):
    stock_id: int
    item_id: int
    variant_id: Optional[int] = None
    quantity: int
    reserved_quantity: int
    available_quantity: int
    is_available: bool


class MovementRead(BaseModel):
    id: int
    stock_id: int
    movement_type: MovementType
    quantity_delta: int
    previous_quantity: int
    new_quantity: int
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    related_movement_id: Optional[int] = None
    release_movement_id: Optional[int] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ReservationCreated(BaseModel):
    reservation_id: int
    stock: StockRead


class TransferResult(BaseModel):
    transfer_out_id: int
    transfer_in_id: int
    source: StockRead
    target: StockRead


class CheckoutCreate(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=100)
    item_id: int = Field(..., ge=1)
    variant_id: Optional[int] = Field(None, ge=1)
    quantity: int = Field(..., ge=1)
    checkout_reference: Optional[str] = Field(None, max_length=100)


class CheckoutRead(BaseModel):
    id: int
    customer_id: str
    item_id: int
    variant_id: Optional[int] = None
    stock_id: int
    quantity: int
    price_per_unit: float
    total_price: float
    reservation_id: Optional[int] = None
    status: CheckoutStatus
    checkout_reference: str
    payment_reference: Optional[str] = None
    reserved_at: Optional[datetime] = None
    version: int
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PaymentRequest(BaseModel):
    payment_amount: Decimal = Field(..., ge=Decimal("0.01"))
    processed_by: str = Field(..., min_length=1, max_length=100)
    payment_reference: Optional[str] = Field(None, max_length=100)


class PaymentReceipt(BaseModel):
    checkout_id: int
    checkout_reference: str
    payment_reference: str
    status: CheckoutStatus
    total_price: float
    amount_paid: float
    change: float
    sale_movement_id: int
    processed_by: str
    processed_at: datetime


class CheckoutCancel(BaseModel):
    cancelled_by: Optional[str] = Field(None, max_length=100)


class ExpireResult(BaseModel):
    expired: int
    as_of: datetime
