# keyshop/services/order_service.py
"""
Order creation and key fulfillment.

An order moves PENDING -> PROCESSING -> COMPLETED | FAILED. Balance, order
rows, the PURCHASE entry and promo usage change together in one commit;
after that every reseller-backed unit is bought with its own
create -> pay -> get-key sequence, strictly in line-item order. A critical
upstream failure refunds the whole order on the spot. Orders with no
reseller-backed lines stay PENDING for manual fulfillment.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from keyshop.config import Config
from keyshop.errors import (
    CheckoutTimeoutError,
    InsufficientBalanceError,
    NotFoundError,
    OrderFailedError,
    OutOfStockError,
    PromoCodeError,
    ValidationError,
)
from keyshop.g2a.client import G2AClient, get_g2a_client
from keyshop.g2a.errors import G2AError
from keyshop.models import (
    Game,
    GameKey,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PromoCode,
    Transaction,
    TransactionType,
    User,
    as_utc,
)
from keyshop.normalization import to_money
from keyshop.observability import increment_counter, record_event
from keyshop.services.cache_service import CacheStore, CacheUnavailableError, get_cache_store
from keyshop.services.email_service import EmailService
from keyshop.services.refund_service import RefundService

audit_logger = logging.getLogger("keyshop.audit")

USER_ORDERS_CACHE_TTL = 300
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CartItem:
    game_id: int
    quantity: int = 1


@dataclass(frozen=True)
class LocalLineItem:
    """Fulfilled manually; never sent upstream."""

    game_id: int
    title: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class ResellerLineItem:
    game_id: int
    title: str
    quantity: int
    unit_price: Decimal
    g2a_product_id: str


LineItem = Union[LocalLineItem, ResellerLineItem]


def to_line_item(game: Game, quantity: int) -> LineItem:
    if game.g2a_product_id:
        return ResellerLineItem(
            game_id=game.gameID,
            title=game.title,
            quantity=quantity,
            unit_price=to_money(game.price),
            g2a_product_id=game.g2a_product_id,
        )
    return LocalLineItem(
        game_id=game.gameID,
        title=game.title,
        quantity=quantity,
        unit_price=to_money(game.price),
    )


@dataclass
class FulfillmentError:
    game_id: int
    unit_index: int
    message: str
    code: Optional[str] = None
    external_order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_id": self.game_id,
            "unit_index": self.unit_index,
            "error": self.message,
            "code": self.code,
            "external_order_id": self.external_order_id,
        }


@dataclass
class OrderOutcome:
    order: Order
    keys: List[GameKey] = field(default_factory=list)
    errors: List[FulfillmentError] = field(default_factory=list)
    reused: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.keys) and bool(self.errors)


@dataclass(frozen=True)
class Pricing:
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    promo: Optional[PromoCode]
    # Discount share per line, in line order; sums to ``discount``
    line_discounts: Tuple[Decimal, ...]


def allocate_discount(lines: Sequence[LineItem], subtotal: Decimal, discount: Decimal) -> Tuple[Decimal, ...]:
    if not lines or subtotal <= 0 or discount <= 0:
        return tuple(Decimal("0.00") for _ in lines)
    shares: List[Decimal] = []
    for line in lines[:-1]:
        gross = line.unit_price * line.quantity
        shares.append(to_money(discount * gross / subtotal))
    shares.append(to_money(discount - sum(shares, Decimal("0.00"))))
    return tuple(shares)


class OrderService:
    def __init__(
        self,
        db_session: Session,
        client: Optional[G2AClient] = None,
        cache: Optional[CacheStore] = None,
        email_service: Optional[EmailService] = None,
        refund_service: Optional[RefundService] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        key_wait: Optional[float] = None,
        idempotency_window: Optional[int] = None,
        checkout_deadline: Optional[float] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.client = client or get_g2a_client()
        self.cache = cache or get_cache_store()
        self.email_service = email_service or EmailService()
        self.refund_service = refund_service or RefundService(db_session)
        self._sleep = sleep
        self.clock = clock
        self.monotonic = monotonic
        self.key_wait = Config.ORDER_KEY_WAIT_MS / 1000.0 if key_wait is None else key_wait
        self.idempotency_window = (
            Config.ORDER_IDEMPOTENCY_WINDOW_SECONDS if idempotency_window is None else idempotency_window
        )
        self.checkout_deadline = (
            Config.ORDER_CHECKOUT_DEADLINE_SECONDS if checkout_deadline is None else checkout_deadline
        )

    # ==========================================
    # CREATE
    # ==========================================

    def create_order(
        self,
        user_id: int,
        items: Iterable[Union[CartItem, Dict[str, Any]]],
        promo_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OrderOutcome:
        started = self.monotonic()
        cart = self._normalize_cart(items)
        self._check_optional_text("promo_code", promo_code)
        self._check_optional_text("idempotency_key", idempotency_key)
        audit_logger.info(
            "ORDER_CREATE_START",
            extra={
                "audit": {
                    "user_id": user_id,
                    "items": [{"game_id": c.game_id, "quantity": c.quantity} for c in cart],
                    "promo_code": promo_code,
                }
            },
        )

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        games = self._load_games(cart)
        for item in cart:
            game = games[item.game_id]
            if not game.in_stock:
                raise OutOfStockError(f"{game.title} is out of stock")
        lines = [to_line_item(games[item.game_id], item.quantity) for item in cart]

        duplicate = self._find_duplicate(user_id, lines, idempotency_key)
        if duplicate is not None:
            increment_counter("orders_idempotent_reuse_total")
            self.logger.info("Returning existing order %s for duplicate submission", duplicate.orderID)
            return OrderOutcome(order=duplicate, keys=list(duplicate.keys), reused=True)

        self._check_live_stock(lines)
        pricing = self._price(lines, promo_code)
        if to_money(user.balance) < pricing.total:
            raise InsufficientBalanceError(
                f"Insufficient balance: {to_money(user.balance)} available, {pricing.total} required"
            )
        self._check_deadline(started)

        order, reused = self._commit_order(user, lines, pricing, idempotency_key)
        if reused:
            return OrderOutcome(order=order, keys=list(order.keys), reused=True)

        increment_counter("orders_created_total")
        audit_logger.info(
            "ORDER_CREATED",
            extra={
                "audit": {
                    "order_id": order.orderID,
                    "user_id": user_id,
                    "total": float(order.total),
                    "status": OrderStatus(order.status).value,
                }
            },
        )
        self._invalidate_user_caches(user_id)

        reseller_lines = [line for line in lines if isinstance(line, ResellerLineItem)]
        if not reseller_lines:
            self.logger.info("Order %s has no reseller-backed items; left PENDING", order.orderID)
            return OrderOutcome(order=order)

        keys, errors, external_ids = self._fulfill(order, user, reseller_lines)
        return self._finalize(order, keys, errors, external_ids)

    @staticmethod
    def _normalize_cart(items: Iterable[Union[CartItem, Dict[str, Any]]]) -> List[CartItem]:
        cart: List[CartItem] = []
        for item in items or []:
            if isinstance(item, CartItem):
                cart.append(item)
                continue
            if not isinstance(item, dict):
                raise ValidationError("Each item must be an object with game_id and quantity")
            game_id = item.get("game_id", item.get("gameId"))
            try:
                cart.append(CartItem(game_id=int(game_id), quantity=int(item.get("quantity", 1))))
            except (TypeError, ValueError):
                raise ValidationError("Each item needs a numeric game_id and quantity")
        if not cart:
            raise ValidationError("Order must contain at least one item")
        for item in cart:
            if item.quantity < 1:
                raise ValidationError("Quantity must be at least 1")
        return cart

    @staticmethod
    def _check_optional_text(name: str, value: Any) -> None:
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")

    def _load_games(self, cart: List[CartItem]) -> Dict[int, Game]:
        wanted = {item.game_id for item in cart}
        games = {game.gameID: game for game in self.db.query(Game).filter(Game.gameID.in_(wanted)).all()}
        missing = sorted(wanted - set(games))
        if missing:
            raise NotFoundError(f"Game not found: {missing[0]}")
        return games

    def _find_duplicate(
        self, user_id: int, lines: List[LineItem], idempotency_key: Optional[str]
    ) -> Optional[Order]:
        if idempotency_key:
            keyed = (
                self.db.query(Order)
                .filter(Order.userID == user_id, Order.idempotency_key == idempotency_key)
                .first()
            )
            if keyed is not None:
                return keyed

        window_start = self.clock() - timedelta(seconds=self.idempotency_window)
        wanted = {line.game_id for line in lines}
        candidates = (
            self.db.query(Order)
            .filter(
                Order.userID == user_id,
                Order.status.in_(ACTIVE_STATUSES),
                Order.created_at >= window_start,
            )
            .order_by(Order.created_at.desc())
            .all()
        )
        for candidate in candidates:
            if set(candidate.game_ids) == wanted:
                return candidate
        return None

    def _check_live_stock(self, lines: List[LineItem]) -> None:
        for line in lines:
            if not isinstance(line, ResellerLineItem):
                continue
            try:
                info = self.client.validate_stock(line.g2a_product_id)
            except G2AError as exc:
                increment_counter("order_stock_check_degraded_total")
                self.logger.warning(
                    "Live stock check failed for %s, trusting local stock: %s",
                    line.g2a_product_id,
                    exc.message,
                )
                continue
            if not info.available or info.stock < line.quantity:
                raise OutOfStockError(
                    f"{line.title} is out of stock (available: {info.stock}, requested: {line.quantity})"
                )

    def _find_promo(self, code: str) -> PromoCode:
        promo = (
            self.db.query(PromoCode)
            .filter(func.upper(PromoCode.code) == code.strip().upper())
            .first()
        )
        if promo is None:
            raise PromoCodeError("Invalid promo code")
        if not promo.active:
            raise PromoCodeError("Promo code is not active")
        if not promo.is_within_window(self.clock()):
            raise PromoCodeError("Promo code has expired or is not yet valid")
        if promo.is_exhausted:
            raise PromoCodeError("Promo code usage limit reached")
        return promo

    def _price(self, lines: List[LineItem], promo_code: Optional[str]) -> Pricing:
        subtotal = to_money(sum((line.unit_price * line.quantity for line in lines), Decimal("0")))
        promo = self._find_promo(promo_code) if promo_code and promo_code.strip() else None
        discount = Decimal("0.00")
        if promo is not None:
            discount = min(to_money(subtotal * Decimal(str(promo.discount)) / Decimal(100)), subtotal)
        return Pricing(
            subtotal=subtotal,
            discount=discount,
            total=to_money(subtotal - discount),
            promo=promo,
            line_discounts=allocate_discount(lines, subtotal, discount),
        )

    def _check_deadline(self, started: float) -> None:
        if self.monotonic() - started > self.checkout_deadline:
            raise CheckoutTimeoutError("Checkout timed out before the order was placed")

    # ==========================================
    # ATOMIC COMMIT
    # ==========================================

    def _commit_order(
        self,
        user: User,
        lines: List[LineItem],
        pricing: Pricing,
        idempotency_key: Optional[str],
    ) -> Tuple[Order, bool]:
        order = Order(
            userID=user.userID,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            total=pricing.total,
            promo_code=pricing.promo.code if pricing.promo else None,
            idempotency_key=idempotency_key,
            created_at=self.clock(),
        )
        try:
            self.db.add(order)
            self.db.flush()
            self._debit_balance(user.userID, pricing.total)
            self._insert_order_items(order, lines, pricing)
            self.db.add(
                Transaction(
                    userID=user.userID,
                    orderID=order.orderID,
                    type=TransactionType.PURCHASE,
                    amount=-pricing.total,
                    currency=Config.DEFAULT_CURRENCY,
                    status="COMPLETED",
                    description=f"Purchase order {order.orderID}",
                )
            )
            if pricing.promo is not None:
                self._consume_promo(pricing.promo)
            if any(isinstance(line, ResellerLineItem) for line in lines):
                order.transition_to(OrderStatus.PROCESSING)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if idempotency_key:
                existing = (
                    self.db.query(Order)
                    .filter(Order.userID == user.userID, Order.idempotency_key == idempotency_key)
                    .first()
                )
                if existing is not None:
                    self.logger.info("Concurrent duplicate collapsed onto order %s", existing.orderID)
                    return existing, True
            raise
        except Exception:
            self.db.rollback()
            raise
        return order, False

    def _debit_balance(self, user_id: int, amount: Decimal) -> None:
        result = self.db.execute(
            update(User)
            .where(User.userID == user_id, User.balance >= amount)
            .values(balance=User.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InsufficientBalanceError("Insufficient balance")

    def _insert_order_items(self, order: Order, lines: List[LineItem], pricing: Pricing) -> None:
        for line, line_discount in zip(lines, pricing.line_discounts):
            self.db.add(
                OrderItem(
                    orderID=order.orderID,
                    gameID=line.game_id,
                    quantity=line.quantity,
                    price=line.unit_price,
                    discount=line_discount,
                )
            )
        self.db.flush()

    def _consume_promo(self, promo: PromoCode) -> None:
        result = self.db.execute(
            update(PromoCode)
            .where(
                PromoCode.promoCodeID == promo.promoCodeID,
                or_(PromoCode.max_uses.is_(None), PromoCode.used_count < PromoCode.max_uses),
            )
            .values(used_count=PromoCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PromoCodeError("Promo code usage limit reached")

    def _invalidate_user_caches(self, user_id: int) -> None:
        for key in (f"user:{user_id}:orders", f"user:{user_id}:cart"):
            try:
                self.cache.delete(key)
            except CacheUnavailableError as exc:
                increment_counter("cache_errors_total", labels={"operation": "user_cache"})
                self.logger.warning("Failed to invalidate %s: %s", key, exc)

    # ==========================================
    # FULFILLMENT
    # ==========================================

    def _fulfill(
        self, order: Order, user: User, lines: List[ResellerLineItem]
    ) -> Tuple[List[GameKey], List[FulfillmentError], List[str]]:
        keys: List[GameKey] = []
        errors: List[FulfillmentError] = []
        external_ids: List[str] = []

        for line in lines:
            for unit_index in range(line.quantity):
                external_id: Optional[str] = None
                try:
                    external_id = self.client.create_order(
                        line.g2a_product_id,
                        max_price=float(line.unit_price),
                        currency=Config.DEFAULT_CURRENCY,
                    )
                    external_ids.append(external_id)
                    self.client.pay_order(external_id)
                    if self.key_wait > 0:
                        self._sleep(self.key_wait)
                    key_value = self.client.get_order_key(external_id)
                    keys.append(self._store_key(order, line, key_value))
                except G2AError as exc:
                    failure = self._record_failure(order, line, unit_index, exc.message, exc.code.value, external_id)
                    errors.append(failure)
                    if exc.is_critical:
                        self.refund_service.compensate_order(
                            order,
                            reason=f"{exc.code.value}: {exc.message}",
                            external_order_ids=external_ids,
                        )
                        self._invalidate_user_caches(order.userID)
                        raise OrderFailedError(
                            f"Order failed: {exc.message}. Balance has been refunded.",
                            order_id=order.orderID,
                            code=exc.code.value,
                        ) from exc
                    continue
                except Exception as exc:
                    if isinstance(exc, SQLAlchemyError):
                        self.db.rollback()
                    errors.append(self._record_failure(order, line, unit_index, str(exc), None, external_id))
                    continue

                self._send_key_email(user, line, key_value)

        return keys, errors, external_ids

    def _record_failure(
        self,
        order: Order,
        line: ResellerLineItem,
        unit_index: int,
        message: str,
        code: Optional[str],
        external_id: Optional[str],
    ) -> FulfillmentError:
        increment_counter("order_units_failed_total", labels={"code": code or "UNEXPECTED"})
        self.logger.error(
            "Failed to purchase key for order %s, game %s, unit %s/%s: %s",
            order.orderID,
            line.game_id,
            unit_index + 1,
            line.quantity,
            message,
            extra={
                "context": {
                    "order_id": order.orderID,
                    "game_id": line.game_id,
                    "g2a_product_id": line.g2a_product_id,
                    "unit_index": unit_index,
                    "external_order_id": external_id,
                    "code": code,
                }
            },
        )
        return FulfillmentError(
            game_id=line.game_id,
            unit_index=unit_index,
            message=message,
            code=code,
            external_order_id=external_id,
        )

    def _store_key(self, order: Order, line: ResellerLineItem, key_value: str) -> GameKey:
        game_key = GameKey(gameID=line.game_id, orderID=order.orderID, key=key_value, activated=False)
        self.db.add(game_key)
        self.db.commit()
        increment_counter("game_keys_issued_total")
        return game_key

    def _send_key_email(self, user: User, line: ResellerLineItem, key_value: str) -> None:
        game = self.db.get(Game, line.game_id)
        platforms = game.platform_names if game is not None else []
        platform = platforms[0] if platforms else "PC"
        try:
            self.email_service.send_key_delivery_email(user.email, line.title, key_value, platform)
        except Exception as exc:
            increment_counter("emails_failed_total")
            self.logger.error("Failed to send key email for game %s to user %s: %s", line.game_id, user.userID, exc)

    def _finalize(
        self,
        order: Order,
        keys: List[GameKey],
        errors: List[FulfillmentError],
        external_ids: List[str],
    ) -> OrderOutcome:
        if not keys:
            self.refund_service.compensate_order(
                order,
                reason="No keys could be issued",
                external_order_ids=external_ids,
            )
            self._invalidate_user_caches(order.userID)
            return OrderOutcome(order=order, errors=errors)

        if external_ids:
            order.external_order_id = ",".join(external_ids)
        order.transition_to(OrderStatus.COMPLETED)
        order.payment_status = PaymentStatus.COMPLETED
        order.completed_at = self.clock()
        self.db.commit()

        increment_counter("orders_completed_total")
        if errors:
            record_event(
                "order_partial_fulfillment",
                {
                    "order_id": order.orderID,
                    "keys_issued": len(keys),
                    "errors": [error.to_dict() for error in errors],
                },
            )
            self.logger.warning(
                "Order %s partially fulfilled: %s keys issued, %s units failed",
                order.orderID,
                len(keys),
                len(errors),
            )
        audit_logger.info(
            "ORDER_COMPLETED",
            extra={
                "audit": {
                    "order_id": order.orderID,
                    "keys_issued": len(keys),
                    "failed_units": len(errors),
                    "external_order_ids": external_ids,
                }
            },
        )
        self._invalidate_user_caches(order.userID)
        return OrderOutcome(order=order, keys=keys, errors=errors)

    # ==========================================
    # QUERIES
    # ==========================================

    def get_order(self, user_id: int, order_id: int) -> Order:
        order = self.db.query(Order).filter_by(orderID=order_id, userID=user_id).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def list_user_orders(self, user_id: int) -> List[Dict[str, Any]]:
        cache_key = f"user:{user_id}:orders"
        try:
            cached = self.cache.get(cache_key)
        except CacheUnavailableError as exc:
            self.logger.warning("Order list cache read failed: %s", exc)
            cached = None
        if cached:
            return json.loads(cached)

        orders = (
            self.db.query(Order)
            .filter(Order.userID == user_id)
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .all()
        )
        payload = [self.serialize_order(order, include_keys=False) for order in orders]
        try:
            self.cache.set(cache_key, json.dumps(payload), USER_ORDERS_CACHE_TTL)
        except CacheUnavailableError as exc:
            self.logger.warning("Order list cache write failed: %s", exc)
        return payload

    @staticmethod
    def serialize_order(order: Order, include_keys: bool = True) -> Dict[str, Any]:
        created_at = as_utc(order.created_at)
        completed_at = as_utc(order.completed_at)
        data: Dict[str, Any] = {
            "id": order.orderID,
            "user_id": order.userID,
            "status": OrderStatus(order.status).value,
            "payment_status": PaymentStatus(order.payment_status).value,
            "subtotal": float(order.subtotal),
            "discount": float(order.discount or 0),
            "total": float(order.total),
            "promo_code": order.promo_code,
            "external_order_ids": order.external_order_id.split(",") if order.external_order_id else [],
            "created_at": created_at.isoformat() if created_at else None,
            "completed_at": completed_at.isoformat() if completed_at else None,
            "items": [
                {
                    "id": item.orderItemID,
                    "game_id": item.gameID,
                    "title": item.game.title if item.game else None,
                    "quantity": item.quantity,
                    "price": float(item.price),
                    "discount": float(item.discount or 0),
                }
                for item in order.items
            ],
        }
        if include_keys:
            data["keys"] = [
                {
                    "id": key.gameKeyID,
                    "game_id": key.gameID,
                    "key": key.key,
                    "activated": key.activated,
                }
                for key in order.keys
            ]
        return data
