import re
from decimal import Decimal

import pytest

from keyshop.normalization import (
    apply_markup,
    extract_categories,
    extract_genres,
    extract_platforms,
    generate_slug,
    normalize_genre_name,
    normalize_platform_name,
    to_money,
)


@pytest.mark.parametrize(
    "price, expected",
    [(0, 0.0), (100, 102.0), (49.99, 50.99), (10, 10.2), (0.01, 0.01)],
)
def test_apply_markup_rounds_to_cents(price, expected):
    assert apply_markup(price) == expected


def test_apply_markup_accepts_explicit_percentage():
    assert apply_markup(Decimal("50.00"), markup_percentage=10) == 55.0


def test_to_money_rounds_half_up():
    assert to_money("2.005") == Decimal("2.01")
    assert to_money(None) == Decimal("0.00")


def test_generate_slug_basic_title():
    assert generate_slug("The Witcher 3: Wild Hunt") == "the-witcher-3-wild-hunt"


def test_generate_slug_collapses_separators_and_truncates():
    assert generate_slug("Call  of -- Duty!!") == "call-of-duty"
    slug = generate_slug("A" * 250)
    assert len(slug) == 100
    assert re.fullmatch(r"[a-z0-9-]{0,100}", generate_slug("Ünïcode & Symbols © 2024")) is not None


def test_generate_slug_is_idempotent():
    once = generate_slug("Baldur's Gate 3 - Deluxe Edition")
    assert generate_slug(once) == once


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Steam", "PC"),
        ("Epic Games Store", "PC"),
        ("PSN", "PlayStation"),
        ("PlayStation 5", "PlayStation"),
        ("Xbox Series X", "Xbox"),
        ("Nintendo Switch", "Nintendo"),
        ("Unknown launcher", "PC"),
    ],
)
def test_normalize_platform_name(raw, expected):
    assert normalize_platform_name(raw) == expected


def test_normalize_genre_name_first_keyword_wins():
    assert normalize_genre_name("Action-Adventure") == "Action"
    assert normalize_genre_name("JRPG") == "RPG"
    assert normalize_genre_name("open world") == "Open World"


def test_extract_platforms_dedupes_and_defaults():
    assert extract_platforms({"platforms": ["Steam", "Origin", "PSN"]}) == ["PC", "PlayStation"]
    assert extract_platforms({}) == ["PC"]


def test_extract_genres_merges_explicit_genre_and_tags():
    raw = {"genre": "shooter", "tags": ["Action", "indie", "shooter"]}
    assert extract_genres(raw) == ["Shooter", "Action", "Indie"]
    assert extract_genres({}) == ["Action"]


def test_extract_categories_capitalizes():
    assert extract_categories({"category": "dLC"}) == ["Dlc"]
    assert extract_categories({}) == ["Games"]
