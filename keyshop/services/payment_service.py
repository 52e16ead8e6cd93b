from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from keyshop.config import Config
from keyshop.models import PaymentStatus, TopUpPayment, Transaction, TransactionType, User, as_utc
from keyshop.normalization import to_money
from keyshop.observability import increment_counter

PAYMENT_METHODS: List[Dict[str, Any]] = [
    {"id": "card", "name": "Credit / Debit card", "currencies": ["EUR", "USD", "PLN", "GBP"]},
    {"id": "paypal", "name": "PayPal", "currencies": ["EUR", "USD", "GBP"]},
    {"id": "mollie", "name": "Mollie", "currencies": ["EUR"]},
    {"id": "terminal", "name": "Payment terminal", "currencies": ["EUR", "PLN"]},
]

MAX_TOP_UP = Decimal("10000.00")


class PaymentService:
    """
    Balance top-ups through a simulated gateway.
    Fulfillment never calls this; it only spends balance credited here.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def list_methods(self) -> List[Dict[str, Any]]:
        return [dict(method) for method in PAYMENT_METHODS]

    def create_top_up(
        self, user_id: int, amount: Any, method: str
    ) -> Tuple[bool, str, Optional[TopUpPayment]]:
        """
        Register a pending top-up.
        Returns (success flag, message, payment or None).
        """
        if method not in {m["id"] for m in PAYMENT_METHODS}:
            return False, f"Unsupported payment method: {method}", None
        try:
            value = to_money(amount)
        except (InvalidOperation, TypeError, ValueError):
            return False, "Amount must be a number", None
        if value <= 0:
            return False, "Amount must be greater than 0", None
        if value > MAX_TOP_UP:
            return False, f"Amount cannot exceed {MAX_TOP_UP}", None
        if self.db.get(User, user_id) is None:
            return False, "User not found", None

        payment = TopUpPayment(
            paymentID=f"pi_{uuid.uuid4().hex[:24]}",
            userID=user_id,
            amount=value,
            currency=Config.DEFAULT_CURRENCY,
            method=method,
            status=PaymentStatus.PENDING,
        )
        self.db.add(payment)
        self.db.commit()
        self.logger.info(
            "Top-up created",
            extra={"payment_id": payment.paymentID, "user_id": user_id, "amount": float(value), "method": method},
        )
        return True, "Top-up created", payment

    def get_payment(self, payment_id: str) -> Optional[TopUpPayment]:
        return self.db.get(TopUpPayment, payment_id)

    def complete_top_up(self, payment_id: str) -> Tuple[bool, str, Optional[TopUpPayment]]:
        """Credit the balance and write the TOP_UP entry in one commit."""
        payment = self.get_payment(payment_id)
        if payment is None:
            return False, "Payment not found", None
        if PaymentStatus(payment.status) != PaymentStatus.PENDING:
            return False, f"Payment is already {PaymentStatus(payment.status).value}", payment

        try:
            self.db.execute(
                update(User)
                .where(User.userID == payment.userID)
                .values(balance=User.balance + payment.amount)
                .execution_options(synchronize_session=False)
            )
            self.db.add(
                Transaction(
                    userID=payment.userID,
                    type=TransactionType.TOP_UP,
                    amount=payment.amount,
                    currency=payment.currency,
                    status="COMPLETED",
                    description=f"Balance top-up via {payment.method}",
                )
            )
            payment.status = PaymentStatus.COMPLETED
            payment.provider_reference = f"TX-{uuid.uuid4().hex[:12].upper()}"
            payment.paid_at = datetime.now(timezone.utc)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Top-up completion failed for %s", payment_id)
            raise

        increment_counter("top_ups_completed_total", labels={"method": payment.method})
        self.logger.info("Top-up %s credited %s to user %s", payment_id, payment.amount, payment.userID)
        return True, "Top-up completed", payment

    def refund_top_up(self, payment_id: str) -> Tuple[bool, str, Optional[TopUpPayment]]:
        payment = self.get_payment(payment_id)
        if payment is None:
            return False, "Payment not found", None
        if PaymentStatus(payment.status) != PaymentStatus.COMPLETED:
            return False, "Only completed payments can be refunded", payment

        try:
            # Money already spent on orders cannot be pulled back
            result = self.db.execute(
                update(User)
                .where(User.userID == payment.userID, User.balance >= payment.amount)
                .values(balance=User.balance - payment.amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                return False, "Insufficient balance to refund this top-up", payment
            self.db.add(
                Transaction(
                    userID=payment.userID,
                    type=TransactionType.REFUND,
                    amount=-payment.amount,
                    currency=payment.currency,
                    status="COMPLETED",
                    description=f"Refund of top-up {payment.paymentID}",
                )
            )
            payment.status = PaymentStatus.REFUNDED
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Top-up refund failed for %s", payment_id)
            raise

        increment_counter("top_ups_refunded_total", labels={"method": payment.method})
        return True, "Refund processed successfully", payment

    @staticmethod
    def serialize(payment: TopUpPayment) -> Dict[str, Any]:
        paid_at = as_utc(payment.paid_at)
        created_at = as_utc(payment.created_at)
        return {
            "id": payment.paymentID,
            "user_id": payment.userID,
            "amount": float(payment.amount),
            "currency": payment.currency,
            "method": payment.method,
            "status": PaymentStatus(payment.status).value,
            "provider_reference": payment.provider_reference,
            "created_at": created_at.isoformat() if created_at else None,
            "paid_at": paid_at.isoformat() if paid_at else None,
        }
