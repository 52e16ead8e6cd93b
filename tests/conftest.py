# tests/conftest.py
"""
Shared fixtures: an in-memory database rebuilt per test, sample users,
games and promo codes, and stand-ins for the reseller client, the email
sender and the cache store.
"""
import os

# Must be set before keyshop.config is imported
os.environ.update(
    {
        "DATABASE_URL": "sqlite:///:memory:",
        "FLASK_TESTING": "true",
        "STRUCTURED_LOGS_ENABLED": "false",
        "REDIS_URL": "",
        "G2A_API_KEY": "",
        "G2A_API_HASH": "",
        "G2A_MOCK_FALLBACK_ENABLED": "false",
        "SYNC_REQUEST_DELAY_MS": "0",
        "SYNC_SCHEDULE_INTERVAL_SECONDS": "0",
        "ORDER_KEY_WAIT_MS": "0",
        "ORDER_PAY_RETRY_DELAY_MS": "0",
        "SMTP_HOST": "",
        "MARKUP_PERCENTAGE": "2",
    }
)

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count
from smtplib import SMTPException

import pytest

from keyshop.database import Base, SessionLocal, engine
from keyshop.g2a.payloads import ProductPage, StockInfo
from keyshop.models import Game, GamePlatform, Platform, PromoCode, User
from keyshop.observability.metrics import reset_metrics
from keyshop.services.cache_service import CacheStore, CacheUnavailableError, InMemoryCacheStore


class StubG2AClient:
    """
    Scriptable reseller client.

    Units are numbered in the order ``create_order`` is called; ``fail``
    makes a given step of a given unit raise.
    """

    def __init__(self):
        self.calls = []
        self.stock = {}
        self.products = {}
        self.pages = {}
        self.failures = {}
        self._units = count(1)

    def fail(self, step, unit, error):
        self.failures[(step, unit)] = error

    def _maybe_fail(self, step, unit):
        error = self.failures.get((step, unit))
        if error is not None:
            raise error

    @staticmethod
    def _unit(order_id):
        return int(order_id.rsplit("-", 1)[1])

    def validate_stock(self, product_id):
        self.calls.append(("validate_stock", product_id))
        value = self.stock.get(product_id, 50)
        if isinstance(value, Exception):
            raise value
        return StockInfo(product_id=product_id, stock=value, available=value > 0)

    def create_order(self, product_id, max_price=None, currency="EUR"):
        unit = next(self._units)
        self.calls.append(("create_order", product_id, max_price, currency))
        self._maybe_fail("create_order", unit)
        return f"ext-{unit}"

    def pay_order(self, order_id):
        self.calls.append(("pay_order", order_id))
        self._maybe_fail("pay_order", self._unit(order_id))
        return f"tx-{order_id}"

    def get_order_key(self, order_id):
        self.calls.append(("get_order_key", order_id))
        self._maybe_fail("get_order_key", self._unit(order_id))
        return f"KEY-{order_id}"

    def get_product_info(self, product_id):
        self.calls.append(("get_product_info", product_id))
        value = self.products[product_id]
        if isinstance(value, Exception):
            raise value
        return value

    def fetch_products(self, page=1, per_page=100, category=None, filters=None):
        self.calls.append(("fetch_products", category, page))
        value = self.pages.get((category, page))
        if value is None:
            return ProductPage(products=[], current_page=page, last_page=1, per_page=per_page, total=0)
        if isinstance(value, list):
            value = value.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def test_connection(self):
        return {"success": True, "message": "Connected to G2A API", "details": {}}

    def step_calls(self, step):
        return [call for call in self.calls if call[0] == step]


class StubEmailService:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_key_delivery_email(self, recipient, product_title, key, platform):
        if self.fail:
            raise SMTPException("SMTP server unavailable")
        self.sent.append(
            {"recipient": recipient, "title": product_title, "key": key, "platform": platform}
        )
        return True


class DownCacheStore(CacheStore):
    """Every operation fails as if Redis were unreachable."""

    def _down(self, *args, **kwargs):
        raise CacheUnavailableError("connection refused")

    get = set = add = delete = delete_if_equals = delete_prefix = _down

    def ping(self):
        return False


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def db_session():
    """Fresh schema for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def cache():
    return InMemoryCacheStore()


@pytest.fixture
def down_cache():
    return DownCacheStore()


@pytest.fixture
def g2a_stub():
    return StubG2AClient()


@pytest.fixture
def email_stub():
    return StubEmailService()


@pytest.fixture
def no_sleep():
    delays = []
    return delays.append, delays


@pytest.fixture
def user(db_session):
    buyer = User(username="buyer", email="buyer@example.com", balance=Decimal("100.00"))
    db_session.add(buyer)
    db_session.commit()
    return buyer


@pytest.fixture
def admin_user(db_session):
    admin = User(username="admin", email="admin@example.com", role="admin", balance=Decimal("0.00"))
    db_session.add(admin)
    db_session.commit()
    return admin


def make_game(db_session, title, price, g2a_product_id=None, in_stock=True, platform=None):
    game = Game(
        title=title,
        slug=title.lower().replace(" ", "-"),
        price=Decimal(str(price)),
        original_price=Decimal(str(price)),
        g2a_product_id=g2a_product_id,
        in_stock=in_stock,
        g2a_stock=bool(g2a_product_id) and in_stock,
        images=[],
    )
    db_session.add(game)
    db_session.flush()
    if platform:
        entity = Platform(name=platform, slug=platform.lower())
        db_session.add(entity)
        db_session.flush()
        db_session.add(GamePlatform(gameID=game.gameID, platformID=entity.platformID))
    db_session.commit()
    return game


@pytest.fixture
def reseller_game(db_session):
    return make_game(db_session, "Elden Ring", "20.00", g2a_product_id="g2a-100", platform="Steam")


@pytest.fixture
def second_reseller_game(db_session):
    return make_game(db_session, "Hades", "15.00", g2a_product_id="g2a-200")


@pytest.fixture
def local_game(db_session):
    return make_game(db_session, "Boxed Classic", "10.00")


@pytest.fixture
def promo(db_session):
    code = PromoCode(
        code="SAVE10",
        discount=Decimal("10.00"),
        active=True,
        valid_from=datetime.now(timezone.utc) - timedelta(days=1),
        valid_until=datetime.now(timezone.utc) + timedelta(days=1),
        used_count=0,
        max_uses=None,
    )
    db_session.add(code)
    db_session.commit()
    return code


@pytest.fixture
def game_factory(db_session):
    def factory(title, price, g2a_product_id=None, in_stock=True, platform=None):
        return make_game(db_session, title, price, g2a_product_id, in_stock, platform)

    return factory
