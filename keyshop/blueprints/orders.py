from __future__ import annotations

from flask import Blueprint, jsonify, request

from keyshop.database import get_db
from keyshop.services.order_service import OrderOutcome, OrderService

from .common import cache_store, current_user_id, email_service, g2a_client, json_body

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _get_order_service() -> OrderService:
    return OrderService(
        get_db(),
        client=g2a_client(),
        cache=cache_store(),
        email_service=email_service(),
    )


def _outcome_payload(outcome: OrderOutcome) -> dict:
    return {
        "order": OrderService.serialize_order(outcome.order),
        "keys_issued": len(outcome.keys),
        "errors": [error.to_dict() for error in outcome.errors],
        "reused": outcome.reused,
    }


@orders_bp.route("", methods=["POST"])
def create_order():
    user_id = current_user_id()
    payload = json_body()
    outcome = _get_order_service().create_order(
        user_id,
        payload.get("items") or [],
        promo_code=payload.get("promo_code") or payload.get("promoCode"),
        idempotency_key=request.headers.get(IDEMPOTENCY_HEADER) or payload.get("idempotency_key"),
    )
    return jsonify(_outcome_payload(outcome)), 200 if outcome.reused else 201


@orders_bp.route("", methods=["GET"])
def list_orders():
    user_id = current_user_id()
    return jsonify({"orders": _get_order_service().list_user_orders(user_id)})


@orders_bp.route("/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    user_id = current_user_id()
    service = _get_order_service()
    return jsonify(service.serialize_order(service.get_order(user_id, order_id)))
