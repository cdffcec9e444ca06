"""
Exception hierarchy for stock_reservation.

Core components (ledger, workflow, collaborators) raise these; only the
request boundary (`service.OrderDesk`) turns them into `OperationResult`s.

Every exception carries a stable `code` used as the error kind in results,
and a `details` dict with structured data for the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StockReservationError(Exception):
    """
    Base exception for all stock_reservation errors.

    Catch this when any failure raised by the package should be handled the
    same way.
    """

    code: str = "stock_reservation_error"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        if message is None:
            message = "An unspecified stock reservation error occurred."
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidArgument(StockReservationError):
    """Missing or malformed input, detected before any state is touched."""

    code = "invalid_argument"


class NotFound(StockReservationError):
    """Unknown product or order id."""

    code = "not_found"


class InsufficientStock(StockReservationError):
    """
    A reservation asked for more units than are available.

    `available` is the count at the moment of the check.
    """

    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: requested={requested}, available={available}",
            available_stock=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidState(StockReservationError):
    """A transition was attempted from a state that forbids it."""

    code = "invalid_state"

    def __init__(self, order_id: str, current: str, attempted: str) -> None:
        super().__init__(
            f"Order {order_id} is {current}; cannot move to {attempted}",
            current_status=current,
        )
        self.order_id = order_id
        self.current = current
        self.attempted = attempted


class InternalError(StockReservationError):
    """Unexpected collaborator failure."""

    code = "internal"


class LockAcquireTimeout(InternalError):
    """
    Raised when a keyed lock cannot be acquired within its timeout.

    Usually another worker holds the lock for longer than expected.
    """


class PersistenceError(InternalError):
    """A persistence collaborator failed to load or save."""


class LedgerInvariantError(InternalError):
    """A confirm/release would have driven a counter below zero."""
