"""
Translation boundary for reseller payloads.

The upstream API evolves additively and uses several aliases for the same
field; everything past this module works with the typed records below.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import bleach

from keyshop.g2a.errors import G2AError, G2AErrorCode
from keyshop.normalization import (
    apply_markup,
    extract_categories,
    extract_genres,
    extract_platforms,
    generate_slug,
    to_money,
)

logger = logging.getLogger(__name__)

ALLOWED_DESCRIPTION_TAGS = ["p", "br", "ul", "ol", "li", "strong", "em", "b", "i"]

_PRICE_FIELDS = ("minPrice", "price", "retailPrice")
_ORIGINAL_PRICE_FIELDS = ("retailPrice", "originalPrice")
_STOCK_FIELDS = ("qty", "stock", "quantity", "available")
_IMAGE_FALLBACK_FIELDS = ("thumbnail", "smallImage", "coverImage")


def _first(raw: Dict[str, Any], names) -> Any:
    for name in names:
        value = raw.get(name)
        if value:
            return value
    return None


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def sanitize_description(text: Any) -> str:
    if not text:
        return ""
    return bleach.clean(str(text), tags=ALLOWED_DESCRIPTION_TAGS, strip=True).strip()


def read_stock(raw: Dict[str, Any]) -> int:
    return max(_as_int(_first(raw, _STOCK_FIELDS)), 0)


@dataclass
class ResellerProduct:
    """One upstream product with markup already applied to both prices."""

    id: str
    name: str
    slug: str
    price: float
    original_price: float
    currency: str = "EUR"
    stock: int = 0
    platforms: List[str] = field(default_factory=list)
    region: str = "Global"
    activation_service: str = "Steam"
    description: str = ""
    images: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    publisher: str = ""
    developer: str = ""
    release_date: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @property
    def in_stock(self) -> bool:
        return self.stock > 0

    def to_game_fields(self, now: datetime) -> Dict[str, Any]:
        """Column values for a ``Game`` row mirroring this product."""
        return {
            "g2a_product_id": self.id,
            "title": self.name,
            "slug": self.slug,
            "description": self.description or f"Get {self.name} at the best price!",
            "price": to_money(self.price),
            "original_price": to_money(self.original_price) if self.original_price else None,
            "currency": self.currency or "EUR",
            "image": self.images[0] if self.images else "",
            "images": list(self.images),
            "in_stock": self.in_stock,
            "g2a_stock": self.in_stock,
            "g2a_last_sync": now,
            "activation_service": self.activation_service or "Steam",
            "region": self.region or "Global",
            "publisher": self.publisher or None,
            "release_date": self.release_date,
        }


def _images(raw: Dict[str, Any]) -> List[str]:
    images = raw.get("images")
    if isinstance(images, list) and images:
        return [str(image) for image in images if image]
    return [str(raw[name]) for name in _IMAGE_FALLBACK_FIELDS if raw.get(name)]


def parse_product(raw: Any) -> ResellerProduct:
    if not isinstance(raw, dict):
        raise G2AError(G2AErrorCode.INVALID_RESPONSE, f"Product payload is not an object: {raw!r}")
    product_id = raw.get("id") or raw.get("productId")
    if not product_id:
        raise G2AError(G2AErrorCode.INVALID_RESPONSE, "Product payload has no id")

    name = str(raw.get("name") or raw.get("title") or "Unknown Game")
    raw_price = _as_float(_first(raw, _PRICE_FIELDS))
    raw_original = _as_float(_first(raw, _ORIGINAL_PRICE_FIELDS)) or raw_price
    tags = raw.get("tags") if isinstance(raw.get("tags"), list) else []

    return ResellerProduct(
        id=str(product_id),
        name=name,
        slug=generate_slug(name),
        price=apply_markup(raw_price),
        original_price=apply_markup(raw_original),
        currency=str(raw.get("currency") or "EUR"),
        stock=read_stock(raw),
        platforms=extract_platforms(raw),
        region=str(raw.get("region") or "Global"),
        activation_service=str(raw.get("platform") or raw.get("activationService") or "Steam"),
        description=sanitize_description(raw.get("description")),
        images=_images(raw),
        genres=extract_genres(raw),
        categories=extract_categories(raw),
        publisher=str(raw.get("publisher") or ""),
        developer=str(raw.get("developer") or ""),
        release_date=str(raw["releaseDate"]) if raw.get("releaseDate") else None,
        tags=[str(tag) for tag in tags],
    )


@dataclass
class ProductPage:
    products: List[ResellerProduct]
    current_page: int
    last_page: int
    per_page: int
    total: int
    # Demo data, never to be mistaken for the live catalog
    is_mock: bool = False


def parse_page(payload: Any, page: int, per_page: int) -> ProductPage:
    if not isinstance(payload, dict):
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            "Product listing response is not an object",
            operation="fetch_products",
        )
    items = payload.get("products")
    if items is None:
        items = payload.get("data")
    if not isinstance(items, list):
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            "Product listing response has no product list",
            operation="fetch_products",
        )

    products: List[ResellerProduct] = []
    for item in items:
        try:
            products.append(parse_product(item))
        except G2AError as exc:
            logger.warning(f"Skipping malformed product on page {page}: {exc.message}")

    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    return ProductPage(
        products=products,
        current_page=_as_int(meta.get("currentPage")) or page,
        last_page=max(_as_int(meta.get("lastPage")), 1),
        per_page=_as_int(meta.get("perPage")) or per_page,
        total=_as_int(meta.get("total")) or len(products),
    )


@dataclass
class ProductFilters:
    min_qty: Optional[int] = None
    min_price_from: Optional[float] = None
    min_price_to: Optional[float] = None
    include_out_of_stock: Optional[bool] = None
    updated_at_from: Optional[str] = None
    updated_at_to: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.min_qty is not None:
            params["minQty"] = self.min_qty
        if self.min_price_from is not None:
            params["minPriceFrom"] = self.min_price_from
        if self.min_price_to is not None:
            params["minPriceTo"] = self.min_price_to
        if self.include_out_of_stock is not None:
            params["includeOutOfStock"] = "true" if self.include_out_of_stock else "false"
        else:
            # Listing defaults to purchasable products only
            params["inStock"] = "true"
        if self.updated_at_from:
            params["updatedAtFrom"] = self.updated_at_from
        if self.updated_at_to:
            params["updatedAtTo"] = self.updated_at_to
        return params


@dataclass(frozen=True)
class StockInfo:
    product_id: str
    stock: int
    available: bool


def stock_from_payload(product_id: str, raw: Any) -> StockInfo:
    if not isinstance(raw, dict):
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            f"Product detail for {product_id} is not an object",
            operation="validate_stock",
        )
    stock = read_stock(raw)
    return StockInfo(product_id=product_id, stock=stock, available=stock > 0)


@dataclass(frozen=True)
class CreatedOrder:
    order_id: str
    price: Optional[float]
    currency: Optional[str]


def parse_created_order(payload: Any) -> CreatedOrder:
    data = payload if isinstance(payload, dict) else {}
    order_id = data.get("order_id") or data.get("orderId")
    if not order_id:
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            "Order creation response has no order_id",
            operation="create_order",
            body=payload,
        )
    price = data.get("price")
    return CreatedOrder(
        order_id=str(order_id),
        price=_as_float(price) if price is not None else None,
        currency=data.get("currency"),
    )


def parse_payment(payload: Any, order_id: str) -> str:
    data = payload if isinstance(payload, dict) else {}
    transaction_id = data.get("transactionId") or data.get("transaction_id")
    if not transaction_id:
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            f"Payment response for order {order_id} has no transaction id",
            operation="pay_order",
            body=payload,
        )
    return str(transaction_id)


def parse_order_key(payload: Any, order_id: str) -> str:
    data = payload if isinstance(payload, dict) else {}
    key = data.get("key")
    if not key:
        raise G2AError(
            G2AErrorCode.INVALID_RESPONSE,
            f"Key response for order {order_id} has no key",
            operation="get_order_key",
            body=payload,
        )
    return str(key)
