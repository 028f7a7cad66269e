# medstock/domain/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class StockError(Exception):
    """
    Base of every failure the engine reports on purpose.

    code is stable and meant for the enclosing service layer to map onto its
    transport (HTTP status, RPC code, ...); message is human readable; details
    carries the identifiers involved.
    """

    code = "STOCK_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(StockError):
    code = "NOT_FOUND"


class InsufficientStock(StockError):
    code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        message: str,
        *,
        requested: int,
        available: int,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"requested": requested, "available": available, **(details or {})}
        super().__init__(message, details=merged)
        self.requested = requested
        self.available = available


class Conflict(StockError):
    code = "CONFLICT"


class ReservationExpired(StockError):
    code = "RESERVATION_EXPIRED"
