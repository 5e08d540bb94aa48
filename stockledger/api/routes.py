from itertools import islice
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from stockledger.application.container import StockLedger
from stockledger.application.reservations import Reservation
from stockledger.application.schemas import (
    AvailabilityRead,
    MovementRead,
    ReservationCommit,
    ReservationCreated,
    ReservationRelease,
    StockAdjust,
    StockCreate,
    StockRead,
    StockReceive,
    StockReserve,
    StockTransfer,
    TransferResult,
)
from stockledger.domain.models import MovementType

router = APIRouter(prefix="/stock", tags=["stock"])


def get_ledger(request: Request) -> StockLedger:
    return request.app.state.ledger


@router.post("", response_model=StockRead, status_code=201)
def create_stock(payload: StockCreate, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.create_stock(
        item_id=payload.item_id,
        variant_id=payload.variant_id,
        warehouse_location=payload.warehouse_location,
        quantity=payload.quantity,
        created_by=payload.created_by,
    )


@router.post("/transfers", response_model=TransferResult, status_code=201)
def transfer_stock(payload: StockTransfer, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.transfer(
        payload.source_stock_id,
        payload.target_stock_id,
        payload.quantity,
        reference_number=payload.reference_number,
        created_by=payload.created_by,
        notes=payload.notes,
    )


@router.get("/item/{item_id}", response_model=list[StockRead])
def list_item_stock(
    item_id: int,
    variant_id: Optional[int] = None,
    ledger: StockLedger = Depends(get_ledger),
):
    """All stock records of an item, or the single record of one variant."""
    if variant_id is not None:
        return [ledger.stock.get_stock_for(item_id, variant_id)]
    return ledger.stock.list_stock_for_item(item_id)


@router.get("/movements/{movement_id}", response_model=MovementRead)
def get_movement(movement_id: int, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.get_movement(movement_id)


@router.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: int, ledger: StockLedger = Depends(get_ledger)):
    return ledger.reservations.get_reservation(reservation_id)


@router.post("/reservations/{reservation_id}/release", response_model=Reservation)
def release_reservation(
    reservation_id: int,
    payload: Optional[ReservationRelease] = None,
    ledger: StockLedger = Depends(get_ledger),
):
    payload = payload or ReservationRelease()
    ledger.reservations.release(reservation_id, released_by=payload.released_by, reason=payload.reason)
    return ledger.reservations.get_reservation(reservation_id)


@router.post("/reservations/{reservation_id}/commit", response_model=Reservation)
def commit_reservation(
    reservation_id: int,
    payload: Optional[ReservationCommit] = None,
    ledger: StockLedger = Depends(get_ledger),
):
    payload = payload or ReservationCommit()
    ledger.reservations.commit(
        reservation_id, committed_by=payload.committed_by, reference_number=payload.reference_number
    )
    return ledger.reservations.get_reservation(reservation_id)


@router.get("/{stock_id}", response_model=StockRead)
def get_stock(stock_id: int, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.get_stock(stock_id)


@router.get("/{stock_id}/availability", response_model=AvailabilityRead)
def get_availability(stock_id: int, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.get_availability(stock_id)


@router.post("/{stock_id}/receive", response_model=StockRead)
def receive_stock(stock_id: int, payload: StockReceive, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.receive(
        stock_id,
        payload.quantity,
        reference_number=payload.reference_number,
        created_by=payload.created_by,
        notes=payload.notes,
    )


@router.post("/{stock_id}/adjust", response_model=StockRead)
def adjust_stock(stock_id: int, payload: StockAdjust, ledger: StockLedger = Depends(get_ledger)):
    return ledger.stock.adjust(
        stock_id, payload.quantity_delta, reason=payload.reason, created_by=payload.created_by
    )


@router.post("/{stock_id}/reserve", response_model=ReservationCreated, status_code=201)
def reserve_stock(stock_id: int, payload: StockReserve, ledger: StockLedger = Depends(get_ledger)):
    reservation_id = ledger.reservations.reserve(
        stock_id,
        payload.quantity,
        checkout_reference=payload.checkout_reference,
        created_by=payload.created_by,
    )
    return ReservationCreated(
        reservation_id=reservation_id,
        stock=StockRead.model_validate(ledger.stock.get_stock(stock_id)),
    )


@router.get("/{stock_id}/movements", response_model=list[MovementRead])
def list_movements(
    stock_id: int,
    movement_type: Optional[MovementType] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    ledger: StockLedger = Depends(get_ledger),
):
    """Movement history of a stock record, newest first."""
    history = ledger.stock.list_movements(stock_id, movement_type)
    return list(islice(history, offset, offset + limit))
