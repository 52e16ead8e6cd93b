import requests

from keyshop.g2a.errors import (
    G2AError,
    G2AErrorCode,
    map_http_error,
    map_request_exception,
    refine_order_error,
)

from helpers import make_response


def test_auth_failure_is_critical_and_not_retryable():
    error = map_http_error(make_response(401, {"message": "Invalid credentials"}), "fetch_products")
    assert error.code == G2AErrorCode.AUTH_FAILED
    assert error.message == "Authentication failed: Invalid credentials"
    assert error.is_critical
    assert not error.retryable


def test_html_404_means_misconfigured_endpoint():
    response = make_response(404, text="<!DOCTYPE html><html><body>Not found</body></html>")
    error = map_http_error(response, "fetch_products")
    assert error.code == G2AErrorCode.ENDPOINT_MISCONFIGURED
    assert error.is_critical


def test_json_404_maps_to_requested_not_found_code():
    response = make_response(404, {"message": "missing"})
    assert map_http_error(response, "get_product_info").code == G2AErrorCode.PRODUCT_NOT_FOUND
    error = map_http_error(response, "pay_order", G2AErrorCode.ORDER_NOT_FOUND)
    assert error.code == G2AErrorCode.ORDER_NOT_FOUND
    assert not error.is_critical


def test_rate_limit_carries_retry_after():
    response = make_response(429, {"message": "slow down"}, headers={"Retry-After": "7"})
    error = map_http_error(response, "fetch_products")
    assert error.code == G2AErrorCode.RATE_LIMIT
    assert error.retry_after == 7.0
    assert error.retryable


def test_payment_required_is_out_of_stock():
    error = map_http_error(make_response(402, {"message": "no stock"}), "create_order")
    assert error.code == G2AErrorCode.OUT_OF_STOCK
    assert error.is_critical


def test_other_statuses_are_api_errors_with_upstream_code():
    error = map_http_error(make_response(500, {"code": "ORD112", "message": "Not enough funds"}), "pay_order")
    assert error.code == G2AErrorCode.API_ERROR
    assert error.upstream_code == "ORD112"
    assert error.message == "G2A API error: Not enough funds"


def test_transport_errors():
    assert map_request_exception(requests.ConnectTimeout("slow"), "x").code == G2AErrorCode.TIMEOUT
    assert map_request_exception(requests.ConnectionError("refused"), "x").code == G2AErrorCode.NETWORK_ERROR
    assert map_request_exception(requests.RequestException("odd"), "x").code == G2AErrorCode.API_ERROR


def test_refine_payment_not_ready_by_code_and_by_message():
    by_code = G2AError(G2AErrorCode.API_ERROR, "G2A API error: Bad Request", status=400, upstream_code="ORD03")
    refined = refine_order_error(by_code, "o-1")
    assert refined.is_payment_not_ready
    assert refined.message == "Payment is not ready yet for order o-1. Try again later."

    by_message = G2AError(
        G2AErrorCode.API_ERROR,
        "G2A API error: Order is not ready yet",
        status=400,
        body={"message": "Order is not ready yet"},
    )
    assert refine_order_error(by_message, "o-2").upstream_code == "ORD03"


def test_refine_key_already_downloaded_and_not_found():
    downloaded = G2AError(G2AErrorCode.API_ERROR, "G2A API error: key downloaded already", status=400)
    refined = refine_order_error(downloaded, "o-3")
    assert refined.upstream_code == "ORD004"
    assert refined.is_critical

    missing = G2AError(G2AErrorCode.ORDER_NOT_FOUND, "Order not found: missing", status=404)
    refined = refine_order_error(missing, "o-4")
    assert refined.code == G2AErrorCode.ORDER_NOT_FOUND
    assert refined.message == "Order not found: o-4"


def test_unrelated_errors_pass_through_unchanged():
    error = G2AError(G2AErrorCode.TIMEOUT, "Request timeout")
    assert refine_order_error(error, "o-5") is error
