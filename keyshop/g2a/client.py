# keyshop/g2a/client.py
"""
HTTP client for the G2A reseller API.

Catalog reads are authenticated with the static hash header; order
lifecycle calls (create, pay, key) use the OAuth2 bearer token unless
``G2A_ORDER_AUTH_MODE=hash``. Every request is audited with credentials
redacted and measured in the in-process metrics registry.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import requests

from keyshop.config import Config, normalize_g2a_url
from keyshop.g2a.auth import HashAuthenticator, TokenManager, parse_token_response
from keyshop.g2a.demo import build_demo_page, find_demo_product, generate_mock_key
from keyshop.g2a.errors import (
    G2AError,
    G2AErrorCode,
    map_http_error,
    map_request_exception,
    refine_order_error,
)
from keyshop.g2a.payloads import (
    ProductFilters,
    ProductPage,
    ResellerProduct,
    StockInfo,
    parse_created_order,
    parse_order_key,
    parse_page,
    parse_payment,
    parse_product,
    stock_from_payload,
)
from keyshop.g2a.resilience import CircuitBreakerRegistry, RateLimiter
from keyshop.observability.metrics import increment_counter, observe_latency, set_gauge
from keyshop.services.cache_service import CacheStore, get_cache_store

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("keyshop.audit")

REDACTED = "[REDACTED]"
_SENSITIVE_HEADERS = {"authorization", "x-api-hash", "x-api-key", "x-g2a-hash"}
RATE_LIMIT_WARNING_THRESHOLD = 10
MAX_PER_PAGE = 100


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        name: REDACTED if name.lower() in _SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


class G2AClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        email: Optional[str] = None,
        env: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        order_auth_mode: Optional[str] = None,
        session: Optional[requests.Session] = None,
        cache: Optional[CacheStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        mock_fallback: Optional[bool] = None,
        pay_retry_delay: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.env = env or Config.G2A_ENV
        self.base_url = normalize_g2a_url(base_url, self.env) if base_url else Config.G2A_API_URL
        self.client_id = Config.G2A_API_KEY if client_id is None else client_id
        self.client_secret = Config.G2A_API_HASH if client_secret is None else client_secret
        self.email = email or Config.G2A_EMAIL
        self.timeout = (timeout_ms if timeout_ms is not None else Config.G2A_TIMEOUT_MS) / 1000.0
        mode = (order_auth_mode or Config.G2A_ORDER_AUTH_MODE).lower()
        self.order_auth = "hash" if mode == "hash" else "oauth2"
        self.session = session or requests.Session()
        self.mock_fallback = Config.G2A_MOCK_FALLBACK_ENABLED if mock_fallback is None else mock_fallback
        self.pay_retry_delay = (
            Config.ORDER_PAY_RETRY_DELAY_MS / 1000.0 if pay_retry_delay is None else pay_retry_delay
        )
        self._sleep = sleep
        self.rate_limiter = rate_limiter or RateLimiter(
            requests_per_second=Config.G2A_RATE_LIMIT_PER_SECOND,
            burst=Config.G2A_RATE_LIMIT_BURST,
            enabled=Config.G2A_RATE_LIMIT_ENABLED,
            clock=clock,
            sleep=sleep,
        )
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=Config.G2A_CIRCUIT_FAILURE_THRESHOLD,
            failure_window=Config.G2A_CIRCUIT_WINDOW_SECONDS,
            reset_timeout=Config.G2A_CIRCUIT_RESET_SECONDS,
            half_open_successes=Config.G2A_CIRCUIT_HALF_OPEN_SUCCESSES,
            enabled=Config.G2A_CIRCUIT_BREAKER_ENABLED,
            clock=clock,
        )

        self.hash_auth = HashAuthenticator(self.client_id, self.client_secret, self.email)
        self.token_manager = TokenManager(self._fetch_oauth_token, cache=cache, env=self.env)

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def demo_mode(self) -> bool:
        """Serve the demo catalog and mock keys instead of calling upstream."""
        return self.mock_fallback and not self.has_credentials

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _token_url(self) -> str:
        parts = urlsplit(self.base_url)
        return f"{parts.scheme}://{parts.netloc}/v1/token"

    def _auth_headers(self, auth: str) -> Dict[str, str]:
        if auth == "oauth2":
            return {"Authorization": f"Bearer {self.token_manager.get_token()}"}
        if auth == "token":
            return self.hash_auth.token_headers(self.env)
        return self.hash_auth.headers()

    def _fail(self, error: G2AError, operation: str, started: float) -> None:
        latency_ms = (time.perf_counter() - started) * 1000
        observe_latency("g2a_request_latency_ms", latency_ms, labels={"operation": operation})
        increment_counter("g2a_requests_error_total", labels={"code": error.code.value})
        audit_logger.warning(
            "G2A_API_ERROR",
            extra={
                "audit": {
                    "operation": operation,
                    "code": error.code.value,
                    "status": error.status,
                    "message": error.message,
                    "latency_ms": round(latency_ms, 2),
                }
            },
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        auth: str = "hash",
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        not_found_code: G2AErrorCode = G2AErrorCode.PRODUCT_NOT_FOUND,
        url: Optional[str] = None,
    ) -> Any:
        if not self.has_credentials:
            raise G2AError(
                G2AErrorCode.AUTH_FAILED,
                "G2A API credentials not configured",
                operation=operation,
            )

        self.rate_limiter.acquire(operation)
        return self.breakers.get(operation).execute(
            lambda: self._send(
                method,
                path,
                operation=operation,
                auth=auth,
                params=params,
                json_body=json_body,
                not_found_code=not_found_code,
                url=url,
            )
        )

    def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        auth: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
        not_found_code: G2AErrorCode,
        url: Optional[str],
    ) -> Any:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self._auth_headers(auth))
        target = url or f"{self.base_url}{path}"

        increment_counter("g2a_requests_total", labels={"operation": operation})
        audit_logger.info(
            "G2A_API_REQUEST",
            extra={
                "audit": {
                    "operation": operation,
                    "method": method,
                    "url": target,
                    "params": params,
                    "headers": redact_headers(headers),
                }
            },
        )

        started = time.perf_counter()
        try:
            response = self.session.request(
                method,
                target,
                headers=headers,
                params=params,
                json=json_body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            error = map_request_exception(exc, operation)
            self._fail(error, operation, started)
            raise error from exc

        self._check_rate_limit(response, operation)

        if not response.ok:
            error = map_http_error(response, operation, not_found_code)
            if error.code == G2AErrorCode.AUTH_FAILED and auth == "oauth2":
                self.token_manager.invalidate()
            self._fail(error, operation, started)
            raise error

        latency_ms = (time.perf_counter() - started) * 1000
        observe_latency("g2a_request_latency_ms", latency_ms, labels={"operation": operation})
        increment_counter("g2a_requests_success_total", labels={"operation": operation})
        audit_logger.info(
            "G2A_API_RESPONSE",
            extra={
                "audit": {
                    "operation": operation,
                    "status": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                }
            },
        )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise G2AError(
                G2AErrorCode.INVALID_RESPONSE,
                f"Response for {operation} is not valid JSON",
                status=response.status_code,
                operation=operation,
                body=response.text[:500],
            ) from exc

    def _check_rate_limit(self, response: requests.Response, operation: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            value = int(remaining)
        except ValueError:
            return
        set_gauge("g2a_rate_limit_remaining", value)
        if value < RATE_LIMIT_WARNING_THRESHOLD:
            logger.warning(
                f"G2A rate limit approaching during {operation}: {value} requests remaining, "
                f"resets at {response.headers.get('X-RateLimit-Reset')}"
            )

    def _fetch_oauth_token(self):
        payload = self._request("GET", "", operation="get_oauth_token", auth="token", url=self._token_url())
        return parse_token_response(payload)

    # ------------------------------------------------------------------
    # catalog
    # ------------------------------------------------------------------

    def fetch_products(
        self,
        page: int = 1,
        per_page: int = 100,
        category: Optional[str] = None,
        filters: Optional[ProductFilters] = None,
    ) -> ProductPage:
        if self.demo_mode:
            logger.warning("G2A credentials not configured, serving demo catalog")
            return build_demo_page(page, per_page)

        params: Dict[str, Any] = {"page": page, "perPage": min(per_page, MAX_PER_PAGE)}
        if category:
            params["category"] = category
        params.update((filters or ProductFilters()).to_params())

        try:
            payload = self._request("GET", "/products", operation="fetch_products", params=params)
            result = parse_page(payload, page, per_page)
        except G2AError as exc:
            if not self.mock_fallback:
                raise
            increment_counter("g2a_mock_fallback_total")
            logger.error(f"Error fetching products page {page}, serving demo catalog: {exc.message}")
            return build_demo_page(page, per_page)

        logger.info(
            f"Fetched {len(result.products)} products (page {result.current_page}/{result.last_page}, "
            f"category {category or 'all'})"
        )
        return result

    def get_product_info(self, product_id: str) -> ResellerProduct:
        if self.demo_mode:
            product = find_demo_product(product_id)
            if product is None:
                raise G2AError(
                    G2AErrorCode.PRODUCT_NOT_FOUND,
                    f"Product not found: {product_id}",
                    status=404,
                    operation="get_product_info",
                )
            return product
        payload = self._request("GET", f"/products/{product_id}", operation="get_product_info")
        return parse_product(payload)

    def validate_stock(self, product_id: str) -> StockInfo:
        """Live stock read from the product detail (there is no stock endpoint)."""
        if self.demo_mode:
            product = self.get_product_info(product_id)
            return StockInfo(product_id=product_id, stock=product.stock, available=product.in_stock)
        payload = self._request("GET", f"/products/{product_id}", operation="validate_stock")
        return stock_from_payload(product_id, payload)

    # ------------------------------------------------------------------
    # order lifecycle (never retried wholesale)
    # ------------------------------------------------------------------

    def create_order(self, product_id: str, max_price: Optional[float] = None, currency: str = "EUR") -> str:
        if self.demo_mode:
            return f"mock-{uuid.uuid4().hex[:12]}"
        body: Dict[str, Any] = {"product_id": product_id, "currency": currency}
        if max_price is not None:
            body["max_price"] = float(max_price)
        payload = self._request(
            "POST",
            "/order",
            operation="create_order",
            auth=self.order_auth,
            json_body=body,
        )
        created = parse_created_order(payload)
        logger.info(
            f"Created G2A order {created.order_id} for product {product_id} "
            f"({created.price} {created.currency or currency})"
        )
        return created.order_id

    def _pay_once(self, order_id: str) -> str:
        try:
            payload = self._request(
                "PUT",
                f"/order/pay/{order_id}",
                operation="pay_order",
                auth=self.order_auth,
                not_found_code=G2AErrorCode.ORDER_NOT_FOUND,
            )
        except G2AError as exc:
            raise refine_order_error(exc, order_id) from exc
        return parse_payment(payload, order_id)

    def pay_order(self, order_id: str) -> str:
        """
        Pay for an upstream order and return its transaction id.

        Payment is retried exactly once, after ``pay_retry_delay`` seconds,
        when the upstream reports the order is not ready yet (ORD03). Any
        other failure, or a failed retry, raises the original error.
        """
        if self.demo_mode:
            return f"mock-tx-{uuid.uuid4().hex[:12]}"
        try:
            return self._pay_once(order_id)
        except G2AError as exc:
            if not exc.is_payment_not_ready:
                raise
            logger.warning(f"Payment not ready for order {order_id}, retrying in {self.pay_retry_delay}s")
            increment_counter("g2a_requests_retry_total", labels={"operation": "pay_order"})
            self._sleep(self.pay_retry_delay)
            try:
                return self._pay_once(order_id)
            except G2AError as retry_exc:
                logger.error(f"Payment retry failed for order {order_id}: {retry_exc.message}")
                raise exc

    def get_order_key(self, order_id: str) -> str:
        """Keys are single-issue upstream; a second download is an error."""
        if self.demo_mode:
            return generate_mock_key()
        try:
            payload = self._request(
                "GET",
                f"/order/key/{order_id}",
                operation="get_order_key",
                auth=self.order_auth,
                not_found_code=G2AErrorCode.ORDER_NOT_FOUND,
            )
        except G2AError as exc:
            raise refine_order_error(exc, order_id) from exc
        return parse_order_key(payload, order_id)

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    def test_connection(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "env": self.env,
            "base_url": self.base_url,
            "order_auth": self.order_auth,
            "mock_fallback": self.mock_fallback,
        }
        if not self.has_credentials:
            return {"success": False, "message": "G2A API credentials not configured", "details": details}
        try:
            payload = self._request(
                "GET",
                "/products",
                operation="test_connection",
                params={"page": 1, "perPage": 1},
            )
            page = parse_page(payload, 1, 1)
        except G2AError as exc:
            details.update({"code": exc.code.value, "status": exc.status})
            return {"success": False, "message": exc.message, "details": details}
        details["total_products"] = page.total
        return {"success": True, "message": "Connected to G2A API", "details": details}


_client: Optional[G2AClient] = None
_client_lock = threading.Lock()


def get_g2a_client() -> G2AClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = G2AClient(cache=get_cache_store())
        return _client
