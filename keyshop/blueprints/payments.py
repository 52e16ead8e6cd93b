from __future__ import annotations

from flask import Blueprint, jsonify

from keyshop.database import get_db
from keyshop.errors import NotFoundError
from keyshop.services.payment_service import PaymentService

from .common import current_user_id, json_body, require_admin

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _get_payment_service() -> PaymentService:
    return PaymentService(get_db())


def _owned_payment(service: PaymentService, payment_id: str):
    payment = service.get_payment(payment_id)
    if payment is None or payment.userID != current_user_id():
        raise NotFoundError("Payment not found")
    return payment


@payments_bp.route("/methods", methods=["GET"])
def list_methods():
    return jsonify({"methods": _get_payment_service().list_methods()})


@payments_bp.route("/top-up", methods=["POST"])
def create_top_up():
    user_id = current_user_id()
    payload = json_body()
    service = _get_payment_service()
    success, message, payment = service.create_top_up(
        user_id, payload.get("amount"), payload.get("method") or payload.get("paymentMethod") or ""
    )
    if not success:
        return jsonify({"error": message}), 400
    return jsonify({"message": message, "payment": service.serialize(payment)}), 201


@payments_bp.route("/<payment_id>", methods=["GET"])
def get_payment(payment_id: str):
    service = _get_payment_service()
    return jsonify(service.serialize(_owned_payment(service, payment_id)))


@payments_bp.route("/<payment_id>/refund", methods=["POST"])
def refund_payment(payment_id: str):
    service = _get_payment_service()
    payment = _owned_payment(service, payment_id)
    success, message, payment = service.refund_top_up(payment.paymentID)
    if not success:
        return jsonify({"error": message}), 400
    return jsonify({"message": message, "payment": service.serialize(payment)})


# Stands in for the gateway's confirmation callback
@payments_bp.route("/<payment_id>/complete", methods=["POST"])
def complete_payment(payment_id: str):
    require_admin()
    service = _get_payment_service()
    success, message, payment = service.complete_top_up(payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    if not success:
        return jsonify({"error": message}), 400
    return jsonify({"message": message, "payment": service.serialize(payment)})
