"""
Pricing and vocabulary normalization shared by the catalog client, the sync
engine and the order workflow.

Keyword tables are checked in declaration order and the first match wins;
previously synced taxonomy rows depend on that order.
"""
from __future__ import annotations

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from keyshop.config import Config

CENT = Decimal("0.01")
SLUG_MAX_LENGTH = 100

_SLUG_STRIP = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACES = re.compile(r"\s+")
_SLUG_HYPHENS = re.compile(r"-+")

_PLATFORM_KEYWORDS = (
    (("steam", "origin", "ea", "uplay", "ubisoft", "gog", "epic"), "PC"),
    (("playstation", "psn"), "PlayStation"),
    (("xbox",), "Xbox"),
    (("nintendo", "switch"), "Nintendo"),
)
DEFAULT_PLATFORM = "PC"

_GENRE_KEYWORDS = (
    ("action", "Action"),
    ("adventure", "Adventure"),
    ("rpg", "RPG"),
    ("shooter", "Shooter"),
    ("strategy", "Strategy"),
    ("simulation", "Simulation"),
    ("sports", "Sports"),
    ("racing", "Racing"),
    ("puzzle", "Puzzle"),
    ("horror", "Horror"),
    ("indie", "Indie"),
    ("mmo", "MMO"),
    ("multiplayer", "Multiplayer"),
)
DEFAULT_GENRE = "Action"
DEFAULT_CATEGORY = "Games"


def to_money(value: Any) -> Decimal:
    """Quantize any numeric input to cents using half-up rounding."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value if value is not None else 0))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def apply_markup(price: float | Decimal, markup_percentage: Optional[float] = None) -> float:
    """
    Return the customer-facing price for an upstream price.

    >>> apply_markup(100)
    102.0
    >>> apply_markup(49.99)
    50.99
    """
    percentage = Config.MARKUP_PERCENTAGE if markup_percentage is None else markup_percentage
    factor = Decimal(1) + Decimal(str(percentage)) / Decimal(100)
    return float(to_money(Decimal(str(price)) * factor))


def generate_slug(name: str) -> str:
    slug = _SLUG_STRIP.sub("", (name or "").lower())
    slug = _SLUG_SPACES.sub("-", slug)
    slug = _SLUG_HYPHENS.sub("-", slug)
    return slug[:SLUG_MAX_LENGTH]


def normalize_platform_name(platform: str) -> str:
    lowered = (platform or "").lower()
    for keywords, name in _PLATFORM_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return name
    return DEFAULT_PLATFORM


def _capitalize_words(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split())


def normalize_genre_name(genre: str) -> str:
    lowered = (genre or "").lower()
    for keyword, name in _GENRE_KEYWORDS:
        if keyword in lowered:
            return name
    return _capitalize_words(genre or "")


def extract_platforms(raw: Dict[str, Any]) -> List[str]:
    platforms: List[str] = []
    for value in raw.get("platforms") or []:
        normalized = normalize_platform_name(str(value))
        if normalized not in platforms:
            platforms.append(normalized)
    return platforms or [DEFAULT_PLATFORM]


def extract_genres(raw: Dict[str, Any]) -> List[str]:
    genres: List[str] = []
    explicit = raw.get("genre")
    if explicit:
        genres.append(normalize_genre_name(str(explicit)))
    for tag in raw.get("tags") or []:
        normalized = normalize_genre_name(str(tag))
        if normalized and normalized not in genres:
            genres.append(normalized)
    return genres or [DEFAULT_GENRE]


def extract_categories(raw: Dict[str, Any]) -> List[str]:
    category = raw.get("category")
    if category:
        text = str(category)
        return [text[:1].upper() + text[1:].lower()]
    return [DEFAULT_CATEGORY]
