"""Error taxonomy of the stock ledger.

Only VersionConflict is transient; the ConcurrencyController retries it.
Everything else is terminal and surfaces to the caller unchanged.
"""

from typing import Any, Optional


class StockLedgerError(Exception):
    code = "STOCK_LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class VersionConflict(StockLedgerError):
    code = "VERSION_CONFLICT"
    retryable = True

    def __init__(self, resource: str, resource_id: Any, expected_version: int, actual_version: Optional[int] = None):
        detail = f"{resource} {resource_id} was modified concurrently (expected version {expected_version}"
        if actual_version is not None:
            detail += f", found {actual_version}"
        super().__init__(detail + ")")
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InsufficientStock(StockLedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, stock_id: Any, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for stock {stock_id}: requested {requested}, available {available}"
        )
        self.stock_id = stock_id
        self.requested = requested
        self.available = available


class InvariantViolation(StockLedgerError):
    code = "INVARIANT_VIOLATION"


class NotFound(StockLedgerError):
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, field: str, value: Any):
        super().__init__(f"{resource} not found with {field}: '{value}'")
        self.resource = resource
        self.field = field
        self.value = value


class DuplicateResource(StockLedgerError):
    code = "DUPLICATE_RESOURCE"

    def __init__(self, resource: str, field: str, value: Any):
        super().__init__(f"{resource} already exists with {field}: '{value}'")
        self.resource = resource
        self.field = field
        self.value = value


class AlreadyReleased(StockLedgerError):
    code = "ALREADY_RELEASED"

    def __init__(self, reservation_id: Any, release_movement_id: Any):
        super().__init__(
            f"Reservation {reservation_id} has already been released by movement {release_movement_id}"
        )
        self.reservation_id = reservation_id
        self.release_movement_id = release_movement_id


class AlreadyCommitted(StockLedgerError):
    code = "ALREADY_COMMITTED"

    def __init__(self, reservation_id: Any, sale_movement_id: Any):
        super().__init__(
            f"Reservation {reservation_id} has already been committed by movement {sale_movement_id}"
        )
        self.reservation_id = reservation_id
        self.sale_movement_id = sale_movement_id


class InvalidLinkage(StockLedgerError):
    code = "INVALID_LINKAGE"


class InvalidTransition(StockLedgerError):
    code = "INVALID_TRANSITION"

    def __init__(self, checkout_id: Any, current: str, target: str):
        super().__init__(f"Checkout {checkout_id} cannot move from {current} to {target}")
        self.checkout_id = checkout_id
        self.current = current
        self.target = target


class InvalidPayment(StockLedgerError):
    code = "INVALID_PAYMENT"


class ImmutableMovement(StockLedgerError):
    code = "IMMUTABLE_MOVEMENT"

    def __init__(self, movement_id: Any, operation: str):
        super().__init__(f"Stock movement {movement_id} is append-only and cannot be {operation}")
        self.movement_id = movement_id
        self.operation = operation
