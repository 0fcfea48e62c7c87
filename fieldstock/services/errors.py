"""
Business errors raised by the service layer.

All of them are raised inside the active transaction; the enclosing
``atomic`` block rolls everything back before the error reaches the caller.
"""

from __future__ import annotations

from decimal import Decimal


class FieldStockError(Exception):
    code = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FieldStockError):
    code = "NOT_FOUND"


class ConflictError(FieldStockError):
    code = "CONFLICT"


class InvalidRequestError(FieldStockError):
    code = "INVALID_REQUEST"


class InsufficientStockError(FieldStockError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, message: str, *, available: Decimal, requested: Decimal):
        super().__init__(message)
        self.available = available
        self.requested = requested
