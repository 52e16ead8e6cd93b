from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from keyshop.config import Config
from keyshop.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Transaction,
    TransactionType,
    User,
)
from keyshop.observability import increment_counter, record_event

audit_logger = logging.getLogger("keyshop.audit")


class RefundService:
    """Compensates a failed order: FAILED status, balance credit and a REFUND entry in one commit."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def compensate_order(
        self,
        order: Order,
        reason: str,
        external_order_ids: Optional[Iterable[str]] = None,
    ) -> Order:
        external_ids = [order_id for order_id in (external_order_ids or []) if order_id]
        try:
            order.transition_to(OrderStatus.FAILED)
            order.payment_status = PaymentStatus.FAILED
            if external_ids:
                order.external_order_id = ",".join(external_ids)

            self.db.execute(
                update(User)
                .where(User.userID == order.userID)
                .values(balance=User.balance + order.total)
                .execution_options(synchronize_session=False)
            )
            self.db.add(
                Transaction(
                    userID=order.userID,
                    orderID=order.orderID,
                    type=TransactionType.REFUND,
                    amount=order.total,
                    currency=Config.DEFAULT_CURRENCY,
                    status="COMPLETED",
                    description=f"Refund for failed order {order.orderID}",
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Compensation failed for order %s", order.orderID)
            raise

        increment_counter("orders_failed_total")
        increment_counter("orders_refunded_total")
        record_event(
            "order_refunded",
            {
                "order_id": order.orderID,
                "user_id": order.userID,
                "amount": float(order.total),
                "reason": reason,
                "external_order_ids": external_ids,
            },
        )
        audit_logger.warning(
            "ORDER_FAILED_REFUNDED",
            extra={
                "audit": {
                    "order_id": order.orderID,
                    "user_id": order.userID,
                    "amount": float(order.total),
                    "reason": reason,
                    "external_order_ids": external_ids,
                }
            },
        )
        self.logger.warning("Order %s failed and was refunded: %s", order.orderID, reason)
        return order
