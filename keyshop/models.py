# keyshop/models.py
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    JSON,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
# This ensures all models use the same SQLAlchemy metadata, preventing conflicts.
from keyshop.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    REFUND = "REFUND"
    TOP_UP = "TOP_UP"


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(50), default='customer', nullable=False)
    balance = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, default=_utcnow)

    orders = relationship("Order", back_populates="user")
    transactions = relationship("Transaction", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'


class Game(Base):
    __tablename__ = 'Game'
    gameID = Column(Integer, primary_key=True, autoincrement=True)
    # Null means the game is not reseller-backed and is fulfilled manually
    g2a_product_id = Column(String(64), unique=True, nullable=True, index=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2))
    currency = Column(String(3), nullable=False, default="EUR")
    image = Column(String(1024))
    images = Column(JSON, default=list)
    in_stock = Column(Boolean, nullable=False, default=True)
    g2a_stock = Column(Boolean, nullable=False, default=False)
    g2a_last_sync = Column(DateTime)
    activation_service = Column(String(100))
    region = Column(String(100))
    publisher = Column(String(255))
    release_date = Column(String(32))
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    category_links = relationship("GameCategory", back_populates="game", cascade="all, delete-orphan")
    genre_links = relationship("GameGenre", back_populates="game", cascade="all, delete-orphan")
    platform_links = relationship("GamePlatform", back_populates="game", cascade="all, delete-orphan")
    keys = relationship("GameKey", back_populates="game")

    @property
    def is_reseller_backed(self) -> bool:
        return bool(self.g2a_product_id)

    @property
    def platform_names(self) -> list[str]:
        return [link.platform.name for link in self.platform_links if link.platform]


class Category(Base):
    __tablename__ = 'Category'
    categoryID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)


class Genre(Base):
    __tablename__ = 'Genre'
    genreID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)


class Platform(Base):
    __tablename__ = 'Platform'
    platformID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)


class GameCategory(Base):
    __tablename__ = 'GameCategory'
    __table_args__ = (UniqueConstraint('gameID', 'categoryID', name='uq_game_category'),)
    gameCategoryID = Column(Integer, primary_key=True, autoincrement=True)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    categoryID = Column(Integer, ForeignKey('Category.categoryID'), nullable=False)

    game = relationship("Game", back_populates="category_links")
    category = relationship("Category")


class GameGenre(Base):
    __tablename__ = 'GameGenre'
    __table_args__ = (UniqueConstraint('gameID', 'genreID', name='uq_game_genre'),)
    gameGenreID = Column(Integer, primary_key=True, autoincrement=True)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    genreID = Column(Integer, ForeignKey('Genre.genreID'), nullable=False)

    game = relationship("Game", back_populates="genre_links")
    genre = relationship("Genre")


class GamePlatform(Base):
    __tablename__ = 'GamePlatform'
    __table_args__ = (UniqueConstraint('gameID', 'platformID', name='uq_game_platform'),)
    gamePlatformID = Column(Integer, primary_key=True, autoincrement=True)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    platformID = Column(Integer, ForeignKey('Platform.platformID'), nullable=False)

    game = relationship("Game", back_populates="platform_links")
    platform = relationship("Platform")


class PromoCode(Base):
    __tablename__ = 'PromoCode'
    promoCodeID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False)
    # Percentage, e.g. 10 for 10%
    discount = Column(Numeric(5, 2), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=False, default=_utcnow)
    valid_until = Column(DateTime)
    used_count = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer)

    def is_within_window(self, now: datetime) -> bool:
        starts = as_utc(self.valid_from)
        ends = as_utc(self.valid_until)
        if starts and now < starts:
            return False
        if ends and now > ends:
            return False
        return True

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and (self.used_count or 0) >= self.max_uses


class Order(Base):
    __tablename__ = 'Order'
    __table_args__ = (UniqueConstraint('userID', 'idempotency_key', name='uq_order_idempotency_key'),)

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="order_payment_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    subtotal = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total = Column(Numeric(10, 2), nullable=False)
    promo_code = Column(String(64))
    # Comma-joined reseller order ids, kept for reconciliation
    external_order_id = Column(Text)
    idempotency_key = Column(String(128))
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    completed_at = Column(DateTime)

    user = relationship("User", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    keys = relationship("GameKey", back_populates="order")
    transactions = relationship("Transaction", back_populates="order")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.PROCESSING},
        OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.FAILED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid order status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def game_ids(self) -> list[int]:
        return sorted(item.gameID for item in self.items)


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    order = relationship("Order", back_populates="items")
    game = relationship("Game")


class GameKey(Base):
    __tablename__ = 'GameKey'
    gameKeyID = Column(Integer, primary_key=True, autoincrement=True)
    gameID = Column(Integer, ForeignKey('Game.gameID'), nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    key = Column(String(255), nullable=False)
    activated = Column(Boolean, nullable=False, default=False)
    activation_date = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)

    game = relationship("Game", back_populates="keys")
    order = relationship("Order", back_populates="keys")


class Transaction(Base):
    __tablename__ = 'Transaction'
    transactionID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    orderID = Column(Integer, ForeignKey('Order.orderID'))
    type = Column(
        SAEnum(TransactionType, name="transaction_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    # Signed: debits are negative
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(String(20), nullable=False, default="COMPLETED")
    description = Column(String(255))
    created_at = Column(DateTime, default=_utcnow)

    user = relationship("User", back_populates="transactions")
    order = relationship("Order", back_populates="transactions")


class TopUpPayment(Base):
    __tablename__ = 'TopUpPayment'
    paymentID = Column(String(64), primary_key=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    method = Column(String(50), nullable=False)
    status = Column(
        SAEnum(PaymentStatus, name="top_up_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    provider_reference = Column(String(120))
    created_at = Column(DateTime, default=_utcnow)
    paid_at = Column(DateTime)

    user = relationship("User")
