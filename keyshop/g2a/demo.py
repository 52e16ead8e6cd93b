"""Offline demo catalog, served only when mock fallback is switched on."""
from __future__ import annotations

import math
import random
from typing import Optional

from keyshop.g2a.payloads import ProductPage, ResellerProduct
from keyshop.normalization import apply_markup, generate_slug

KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

DEMO_GAMES = (
    ("Cyberpunk 2077", 45.99, "RPG"),
    ("The Witcher 3: Wild Hunt", 19.99, "RPG"),
    ("Red Dead Redemption 2", 39.99, "Action"),
    ("GTA V", 24.99, "Action"),
    ("Elden Ring", 49.99, "Action"),
    ("FIFA 24", 54.99, "Sports"),
    ("Call of Duty: Modern Warfare III", 59.99, "Shooter"),
    ("Baldurs Gate 3", 49.99, "RPG"),
    ("Starfield", 54.99, "RPG"),
    ("Hogwarts Legacy", 44.99, "Adventure"),
)


def _demo_product(index: int) -> ResellerProduct:
    name, price, genre = DEMO_GAMES[index]
    return ResellerProduct(
        id=f"g2a-{index + 1}",
        name=name,
        slug=generate_slug(name),
        price=apply_markup(price),
        original_price=apply_markup(round(price * 1.2, 2)),
        currency="EUR",
        # Deterministic so repeated demo syncs do not churn rows
        stock=10 + (index * 7) % 90,
        platforms=["PC"],
        description=f"Experience {name} at the best price!",
        images=[f"https://picsum.photos/seed/{index}/400/600"],
        genres=[genre],
        categories=["Games"],
        publisher="Publisher",
        developer="Developer",
        tags=[genre.lower(), "popular"],
    )


def build_demo_page(page: int = 1, per_page: int = 100) -> ProductPage:
    products = [_demo_product(index) for index in range(len(DEMO_GAMES))]
    per_page = max(per_page, 1)
    start = (max(page, 1) - 1) * per_page
    return ProductPage(
        products=products[start:start + per_page],
        current_page=page,
        last_page=max(math.ceil(len(products) / per_page), 1),
        per_page=per_page,
        total=len(products),
        is_mock=True,
    )


def find_demo_product(product_id: str) -> Optional[ResellerProduct]:
    for index in range(len(DEMO_GAMES)):
        if f"g2a-{index + 1}" == product_id:
            return _demo_product(index)
    return None


def generate_mock_key(rng: Optional[random.Random] = None) -> str:
    """Five dash-separated groups of five unambiguous characters."""
    rng = rng or random.SystemRandom()
    return "-".join("".join(rng.choice(KEY_ALPHABET) for _ in range(5)) for _ in range(5))
