"""
HTTP surface: orders, payments, admin catalog endpoints and health.

Requests run against the module-level app with the reseller client, the
cache and the mailer swapped out through ``app.extensions``.
"""
from decimal import Decimal

import pytest

from keyshop.g2a.errors import G2AError, G2AErrorCode
from keyshop.g2a.payloads import ProductPage, parse_product
from keyshop.main import app
from keyshop.models import Order, OrderStatus, User


@pytest.fixture
def client(db_session, g2a_stub, cache, email_stub):
    app.extensions["g2a_client"] = g2a_stub
    app.extensions["cache_store"] = cache
    app.extensions["email_service"] = email_stub
    try:
        with app.test_client() as test_client:
            yield test_client
    finally:
        for name in ("g2a_client", "cache_store", "email_service"):
            app.extensions.pop(name, None)


def _login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "UP"
    assert body["components"]["database"]["status"] == "UP"
    assert body["components"]["cache"]["status"] == "UP"
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


def test_orders_require_login(client):
    assert client.get("/api/orders").status_code == 401
    assert client.post("/api/orders", json={"items": []}).status_code == 401


def test_place_and_fetch_order(client, db_session, user, reseller_game):
    user_id, game_id = user.userID, reseller_game.gameID
    _login(client, user_id)

    response = client.post(
        "/api/orders",
        json={"items": [{"game_id": game_id, "quantity": 1}]},
        headers={"Idempotency-Key": "checkout-1"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["keys_issued"] == 1
    assert body["reused"] is False
    assert body["order"]["status"] == "COMPLETED"
    assert body["order"]["keys"][0]["key"] == "KEY-ext-1"
    order_id = body["order"]["id"]

    repeat = client.post(
        "/api/orders",
        json={"items": [{"game_id": game_id, "quantity": 1}]},
        headers={"Idempotency-Key": "checkout-1"},
    )
    assert repeat.status_code == 200
    assert repeat.get_json()["order"]["id"] == order_id

    listing = client.get("/api/orders")
    assert [order["id"] for order in listing.get_json()["orders"]] == [order_id]

    detail = client.get(f"/api/orders/{order_id}")
    assert detail.status_code == 200
    assert detail.get_json()["total"] == 20.0

    db_session.expire_all()
    assert db_session.get(User, user_id).balance == Decimal("80.00")


def test_order_errors_map_to_status_codes(client, user, reseller_game, game_factory):
    pricey = game_factory("Collector Edition", "500.00", g2a_product_id="g2a-900")
    _login(client, user.userID)

    insufficient = client.post("/api/orders", json={"items": [{"game_id": pricey.gameID}]})
    missing = client.post("/api/orders", json={"items": [{"game_id": 999}]})
    empty = client.post("/api/orders", json={"items": []})
    not_found = client.get("/api/orders/12345")

    assert insufficient.status_code == 400
    assert insufficient.get_json()["error"].startswith("Insufficient balance")
    assert missing.status_code == 404
    assert empty.status_code == 400
    assert not_found.status_code == 404


def test_malformed_promo_code_and_idempotency_key_are_bad_requests(client, db_session, user, reseller_game):
    _login(client, user.userID)
    items = [{"game_id": reseller_game.gameID}]

    numeric_promo = client.post("/api/orders", json={"items": items, "promo_code": 10})
    listed_key = client.post("/api/orders", json={"items": items, "idempotency_key": ["abc"]})

    assert numeric_promo.status_code == 400
    assert numeric_promo.get_json()["error"] == "promo_code must be a string"
    assert listed_key.status_code == 400
    assert listed_key.get_json()["error"] == "idempotency_key must be a string"
    assert db_session.query(Order).count() == 0


def test_critical_fulfillment_failure_reports_refund(client, db_session, user, reseller_game, g2a_stub):
    g2a_stub.fail("create_order", 1, G2AError(G2AErrorCode.AUTH_FAILED, "Authentication failed"))
    _login(client, user.userID)

    response = client.post("/api/orders", json={"items": [{"game_id": reseller_game.gameID}]})

    assert response.status_code == 400
    body = response.get_json()
    assert body["code"] == "G2A_AUTH_FAILED"
    assert "Balance has been refunded" in body["error"]
    db_session.expire_all()
    assert OrderStatus(db_session.get(Order, body["order_id"]).status) == OrderStatus.FAILED


def test_admin_endpoints_require_admin(client, user):
    _login(client, user.userID)

    assert client.post("/api/admin/g2a/sync", json={}).status_code == 403
    assert client.get("/api/admin/g2a/sync/status").status_code == 403
    assert client.get("/admin/metrics").status_code == 403


def test_admin_can_sync_catalog(client, admin_user, g2a_stub):
    g2a_stub.pages[("games", 1)] = ProductPage(
        products=[parse_product({"id": "77", "name": "Celeste", "minPrice": 10, "qty": 4})],
        current_page=1,
        last_page=1,
        per_page=100,
        total=1,
    )
    _login(client, admin_user.userID)

    response = client.post("/api/admin/g2a/sync", json={"fullSync": True, "includeRelationships": True})

    assert response.status_code == 200
    result = response.get_json()["result"]
    assert result["added"] == 1
    assert result["platforms_created"] == 1

    status = client.get("/api/admin/g2a/sync/status").get_json()
    assert status["total_products"] == 1
    assert status["sync_in_progress"] is False
    assert client.get("/api/admin/g2a/sync/progress").get_json()["in_progress"] is False
    assert client.get("/api/admin/g2a/test-connection").status_code == 200
    assert client.get("/admin/metrics").status_code == 200


def test_sync_rejects_malformed_product_ids(client, admin_user):
    _login(client, admin_user.userID)

    response = client.post("/api/admin/g2a/sync", json={"productIds": 5})

    assert response.status_code == 400


def test_top_up_flow(client, db_session, user, admin_user):
    user_id = user.userID
    _login(client, user_id)

    methods = client.get("/api/payments/methods").get_json()["methods"]
    assert methods[0]["id"] == "card"

    rejected = client.post("/api/payments/top-up", json={"amount": 0, "method": "card"})
    assert rejected.status_code == 400

    created = client.post("/api/payments/top-up", json={"amount": "15", "method": "card"})
    assert created.status_code == 201
    payment_id = created.get_json()["payment"]["id"]
    assert client.get(f"/api/payments/{payment_id}").get_json()["status"] == "PENDING"
    assert client.post(f"/api/payments/{payment_id}/complete").status_code == 403

    _login(client, admin_user.userID)
    assert client.get(f"/api/payments/{payment_id}").status_code == 404
    completed = client.post(f"/api/payments/{payment_id}/complete")
    assert completed.get_json()["payment"]["status"] == "COMPLETED"

    db_session.expire_all()
    assert db_session.get(User, user_id).balance == Decimal("115.00")
