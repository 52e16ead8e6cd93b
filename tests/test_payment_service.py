from decimal import Decimal

import pytest

from keyshop.models import PaymentStatus, Transaction, TransactionType
from keyshop.observability.metrics import get_counter_value
from keyshop.services.payment_service import PaymentService


@pytest.fixture
def payments(db_session):
    return PaymentService(db_session)


def test_lists_supported_methods(payments):
    ids = [method["id"] for method in payments.list_methods()]
    assert ids == ["card", "paypal", "mollie", "terminal"]


@pytest.mark.parametrize(
    "amount, method, message",
    [
        ("25", "bitcoin", "Unsupported payment method: bitcoin"),
        ("abc", "card", "Amount must be a number"),
        ("0", "card", "Amount must be greater than 0"),
        ("-5", "card", "Amount must be greater than 0"),
        ("10000.01", "card", "Amount cannot exceed 10000.00"),
    ],
)
def test_rejects_invalid_top_ups(payments, user, amount, method, message):
    success, msg, payment = payments.create_top_up(user.userID, amount, method)

    assert success is False
    assert msg == message
    assert payment is None


def test_unknown_user_cannot_top_up(payments):
    assert payments.create_top_up(4242, "10", "card") == (False, "User not found", None)


def test_completing_top_up_credits_balance(db_session, payments, user):
    success, _, payment = payments.create_top_up(user.userID, "25.50", "paypal")
    assert success is True
    assert payment.paymentID.startswith("pi_")
    assert PaymentStatus(payment.status) == PaymentStatus.PENDING

    success, msg, payment = payments.complete_top_up(payment.paymentID)

    assert (success, msg) == (True, "Top-up completed")
    assert PaymentStatus(payment.status) == PaymentStatus.COMPLETED
    assert payment.provider_reference.startswith("TX-")
    db_session.refresh(user)
    assert user.balance == Decimal("125.50")
    entry = db_session.query(Transaction).filter_by(userID=user.userID).one()
    assert TransactionType(entry.type) == TransactionType.TOP_UP
    assert entry.amount == Decimal("25.50")
    assert get_counter_value("top_ups_completed_total", {"method": "paypal"}) == 1

    again = payments.complete_top_up(payment.paymentID)
    assert again[:2] == (False, "Payment is already COMPLETED")


def test_refund_reverses_completed_top_up(db_session, payments, user):
    _, _, payment = payments.create_top_up(user.userID, "30", "card")
    payments.complete_top_up(payment.paymentID)

    success, msg, payment = payments.refund_top_up(payment.paymentID)

    assert (success, msg) == (True, "Refund processed successfully")
    assert PaymentStatus(payment.status) == PaymentStatus.REFUNDED
    db_session.refresh(user)
    assert user.balance == Decimal("100.00")


def test_refund_requires_completed_payment_and_unspent_balance(db_session, payments, user):
    _, _, pending = payments.create_top_up(user.userID, "30", "card")
    assert payments.refund_top_up(pending.paymentID)[:2] == (False, "Only completed payments can be refunded")

    payments.complete_top_up(pending.paymentID)
    user.balance = Decimal("10.00")
    db_session.commit()

    success, msg, _ = payments.refund_top_up(pending.paymentID)

    assert success is False
    assert msg == "Insufficient balance to refund this top-up"
    db_session.refresh(user)
    assert user.balance == Decimal("10.00")


def test_serialize_and_missing_payment(payments, user):
    _, _, payment = payments.create_top_up(user.userID, "12.34", "mollie")

    payload = PaymentService.serialize(payment)

    assert payload["amount"] == 12.34
    assert payload["status"] == "PENDING"
    assert payload["paid_at"] is None
    assert payments.complete_top_up("pi_missing") == (False, "Payment not found", None)
