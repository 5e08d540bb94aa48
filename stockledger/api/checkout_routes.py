from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from stockledger.api.routes import get_ledger
from stockledger.application.container import StockLedger
from stockledger.application.schemas import (
    CheckoutCancel,
    CheckoutCreate,
    CheckoutRead,
    ExpireResult,
    PaymentReceipt,
    PaymentRequest,
)
from stockledger.domain.models import CheckoutStatus, utcnow

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutRead, status_code=201)
def create_checkout(payload: CheckoutCreate, ledger: StockLedger = Depends(get_ledger)):
    """Open a checkout and reserve its stock in one step."""
    return ledger.checkout.checkout(
        customer_id=payload.customer_id,
        item_id=payload.item_id,
        quantity=payload.quantity,
        variant_id=payload.variant_id,
        checkout_reference=payload.checkout_reference,
    )


@router.get("/customer/{customer_id}", response_model=list[CheckoutRead])
def list_customer_checkouts(
    customer_id: str,
    status: Optional[CheckoutStatus] = None,
    ledger: StockLedger = Depends(get_ledger),
):
    return ledger.checkout.list_for_customer(customer_id, status)


@router.post("/maintenance/expire", response_model=ExpireResult)
def expire_checkouts(as_of: Optional[datetime] = None, ledger: StockLedger = Depends(get_ledger)):
    if as_of is None:
        as_of = utcnow()
    elif as_of.tzinfo is not None:
        # stored timestamps are naive UTC
        as_of = as_of.astimezone(timezone.utc).replace(tzinfo=None)
    return ExpireResult(expired=ledger.checkout.expire_stale(as_of), as_of=as_of)


@router.get("/{checkout_id}", response_model=CheckoutRead)
def get_checkout(checkout_id: int, ledger: StockLedger = Depends(get_ledger)):
    return ledger.checkout.get(checkout_id)


@router.post("/{checkout_id}/payment", response_model=PaymentReceipt)
def pay_checkout(checkout_id: int, payload: PaymentRequest, ledger: StockLedger = Depends(get_ledger)):
    return ledger.checkout.pay(
        checkout_id,
        payload.payment_amount,
        processed_by=payload.processed_by,
        payment_reference=payload.payment_reference,
    )


@router.post("/{checkout_id}/cancel", response_model=CheckoutRead)
def cancel_checkout(
    checkout_id: int,
    payload: Optional[CheckoutCancel] = None,
    ledger: StockLedger = Depends(get_ledger),
):
    payload = payload or CheckoutCancel()
    return ledger.checkout.cancel(checkout_id, cancelled_by=payload.cancelled_by)
