"""Caller-facing application errors; each carries the HTTP status it maps to."""
from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class NotFoundError(AppError):
    status_code = 404


class ValidationError(AppError):
    status_code = 400


class OutOfStockError(ValidationError):
    pass


class PromoCodeError(ValidationError):
    pass


class InsufficientBalanceError(ValidationError):
    pass


class CheckoutTimeoutError(AppError):
    status_code = 408


class SyncInProgressError(AppError):
    status_code = 409

    def __init__(self, message: str = "Catalog sync already in progress") -> None:
        super().__init__(message)


class OrderFailedError(AppError):
    """Fulfillment hit a critical reseller error; the order was refunded."""

    status_code = 400

    def __init__(self, message: str, order_id: int, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.order_id = order_id
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["order_id"] = self.order_id
        if self.code:
            payload["code"] = self.code
        return payload
