from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stockledger.core.logging_config import get_logger
from stockledger.domain.errors import (
    AlreadyCommitted,
    AlreadyReleased,
    DuplicateResource,
    ImmutableMovement,
    InsufficientStock,
    InvalidLinkage,
    InvalidPayment,
    InvalidTransition,
    InvariantViolation,
    NotFound,
    StockLedgerError,
    VersionConflict,
)

logger = get_logger(__name__)

HTTP_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    VersionConflict: status.HTTP_409_CONFLICT,
    DuplicateResource: status.HTTP_409_CONFLICT,
    AlreadyReleased: status.HTTP_409_CONFLICT,
    AlreadyCommitted: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    InsufficientStock: status.HTTP_400_BAD_REQUEST,
    InvalidLinkage: status.HTTP_400_BAD_REQUEST,
    InvalidPayment: status.HTTP_400_BAD_REQUEST,
    InvariantViolation: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ImmutableMovement: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "path": request.url.path,
    }
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def stock_ledger_error_handler(request: Request, exc: StockLedgerError) -> JSONResponse:
    status_code = HTTP_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    details = None
    if isinstance(exc, InsufficientStock):
        details = {"stock_id": exc.stock_id, "requested": exc.requested, "available": exc.available}

    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"{exc.code}: {exc.message}",
        extra={'extra_fields': {'path': request.url.path, 'error_code': exc.code, 'status_code': status_code}}
    )
    return error_response(request, status_code, exc.code, exc.message, details)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(
        request,
        422,
        "VALIDATION_ERROR",
        "Request validation failed",
        details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StockLedgerError, stock_ledger_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
