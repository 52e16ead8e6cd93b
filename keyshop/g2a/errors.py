"""Reseller API error taxonomy and the HTTP/transport error mapping."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

import requests


class G2AErrorCode(str, Enum):
    AUTH_FAILED = "G2A_AUTH_FAILED"
    PRODUCT_NOT_FOUND = "G2A_PRODUCT_NOT_FOUND"
    ORDER_NOT_FOUND = "G2A_ORDER_NOT_FOUND"
    OUT_OF_STOCK = "G2A_OUT_OF_STOCK"
    RATE_LIMIT = "G2A_RATE_LIMIT"
    TIMEOUT = "G2A_TIMEOUT"
    NETWORK_ERROR = "G2A_NETWORK_ERROR"
    ENDPOINT_MISCONFIGURED = "G2A_ENDPOINT_MISCONFIGURED"
    INVALID_RESPONSE = "G2A_INVALID_RESPONSE"
    API_ERROR = "G2A_API_ERROR"
    # Raised locally without contacting the API
    CIRCUIT_OPEN = "G2A_CIRCUIT_OPEN"


# Transient conditions; only idempotent reads may be retried on these
RETRYABLE_CODES = frozenset(
    {G2AErrorCode.TIMEOUT, G2AErrorCode.NETWORK_ERROR, G2AErrorCode.RATE_LIMIT}
)

# A unit failing with one of these aborts and refunds the whole order
CRITICAL_CODES = frozenset(
    {
        G2AErrorCode.OUT_OF_STOCK,
        G2AErrorCode.AUTH_FAILED,
        G2AErrorCode.API_ERROR,
        G2AErrorCode.ENDPOINT_MISCONFIGURED,
    }
)

PAYMENT_NOT_READY = "ORD03"
KEY_ALREADY_DOWNLOADED = "ORD004"
NOT_ENOUGH_FUNDS = "ORD112"
PAYMENT_TOO_LATE = "ORD114"

# Upstream order codes, with the message fragments the API uses when it
# omits the code
_ORDER_UPSTREAM_CODES = (
    (PAYMENT_NOT_READY, "not ready yet", "Payment is not ready yet for order {order_id}. Try again later."),
    (NOT_ENOUGH_FUNDS, "enough funds", "Not enough funds to pay for order {order_id}"),
    (PAYMENT_TOO_LATE, "too late", "Payment is too late for order {order_id}. Try with another order."),
    (KEY_ALREADY_DOWNLOADED, "downloaded already", "Order key has been downloaded already: {order_id}"),
)


class G2AError(Exception):
    """A classified failure talking to the reseller API."""

    def __init__(
        self,
        code: G2AErrorCode,
        message: str,
        *,
        status: Optional[int] = None,
        operation: Optional[str] = None,
        upstream_code: Optional[str] = None,
        retry_after: Optional[float] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.operation = operation
        self.upstream_code = upstream_code
        self.retry_after = retry_after
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def is_critical(self) -> bool:
        return self.code in CRITICAL_CODES

    @property
    def is_payment_not_ready(self) -> bool:
        return self.upstream_code == PAYMENT_NOT_READY

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "status": self.status,
            "operation": self.operation,
        }
        if self.upstream_code:
            payload["upstream_code"] = self.upstream_code
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload

    def __repr__(self) -> str:
        return f"G2AError({self.code.value}, {self.message!r}, status={self.status}, operation={self.operation})"


def _decode_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_html(response: requests.Response, body: Any) -> bool:
    content_type = (response.headers.get("Content-Type") or "").lower()
    if "text/html" in content_type:
        return True
    if isinstance(body, str):
        head = body.lstrip()[:15].lower()
        return head.startswith("<!doctype html") or head.startswith("<html")
    return False


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def map_http_error(
    response: requests.Response,
    operation: str,
    not_found_code: G2AErrorCode = G2AErrorCode.PRODUCT_NOT_FOUND,
) -> G2AError:
    """Classify a non-2xx response."""
    status = response.status_code
    body = _decode_body(response)
    details = body if isinstance(body, dict) else {}
    upstream_code = details.get("code") if isinstance(details.get("code"), str) else None
    reason = details.get("message") or response.reason or f"HTTP {status}"

    if status in (401, 403):
        return G2AError(
            G2AErrorCode.AUTH_FAILED,
            f"Authentication failed: {reason}",
            status=status,
            operation=operation,
            upstream_code=upstream_code,
        )
    if status == 404:
        if _is_html(response, body):
            # Wrong base URL: the upstream answers with its HTML error page
            return G2AError(
                G2AErrorCode.ENDPOINT_MISCONFIGURED,
                f"Endpoint not found (404): check the API URL configuration ({response.url})",
                status=status,
                operation=operation,
            )
        label = "Order" if not_found_code == G2AErrorCode.ORDER_NOT_FOUND else "Product"
        return G2AError(
            not_found_code,
            f"{label} not found: {reason}",
            status=status,
            operation=operation,
            upstream_code=upstream_code,
        )
    if status == 429:
        return G2AError(
            G2AErrorCode.RATE_LIMIT,
            f"Rate limit exceeded: {reason}",
            status=status,
            operation=operation,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 402:
        return G2AError(
            G2AErrorCode.OUT_OF_STOCK,
            f"Product unavailable or insufficient funds: {reason}",
            status=status,
            operation=operation,
            upstream_code=upstream_code,
        )
    return G2AError(
        G2AErrorCode.API_ERROR,
        f"G2A API error: {reason}",
        status=status,
        operation=operation,
        upstream_code=upstream_code,
        body=body,
    )


def map_request_exception(exc: requests.RequestException, operation: str) -> G2AError:
    """Classify a transport failure (no HTTP response)."""
    # ConnectTimeout is both a Timeout and a ConnectionError; timeout wins
    if isinstance(exc, requests.Timeout):
        return G2AError(G2AErrorCode.TIMEOUT, f"Request timeout: {exc}", operation=operation)
    if isinstance(exc, requests.ConnectionError):
        return G2AError(G2AErrorCode.NETWORK_ERROR, f"Network error: {exc}", operation=operation)
    return G2AError(G2AErrorCode.API_ERROR, f"Unexpected error: {exc}", operation=operation)


def refine_order_error(error: G2AError, order_id: str) -> G2AError:
    """
    Re-label an order lifecycle failure using the upstream ORDxxx code.

    Payment and key-download rejections are reported as generic upstream
    errors regardless of the HTTP status they arrived with.
    """
    if error.code in (G2AErrorCode.ORDER_NOT_FOUND, G2AErrorCode.PRODUCT_NOT_FOUND) and error.status == 404:
        return G2AError(
            G2AErrorCode.ORDER_NOT_FOUND,
            f"Order not found: {order_id}",
            status=error.status,
            operation=error.operation,
        )

    body_message = ""
    if isinstance(error.body, dict):
        body_message = str(error.body.get("message") or "")
    haystack = f"{body_message} {error.message}".lower()

    for code, fragment, template in _ORDER_UPSTREAM_CODES:
        if error.upstream_code == code or fragment in haystack:
            return G2AError(
                G2AErrorCode.API_ERROR,
                template.format(order_id=order_id),
                status=error.status,
                operation=error.operation,
                upstream_code=code,
                body=error.body,
            )
    return error
