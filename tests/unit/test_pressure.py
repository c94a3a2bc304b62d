"""Unit tests for market pressure scoring, margin classes and fee estimates."""

from __future__ import annotations

import pytest

from market_copilot.agents.fees import estimate_fees, quote_to_wire, referral_fee_for, referral_pct_for
from market_copilot.agents.pressure import classify_margin, interpret, pressure_level, score_market_pressure
from market_copilot.data.schema import Listing


def listing(item_id: str, brand: str, reviews: int | None, sponsored: bool = False) -> Listing:
    return Listing(item_id=item_id, brand=brand, reviews=reviews, is_sponsored=sponsored, price=20.0)


def crowded_market() -> list[Listing]:
    brands = ["Logix"] * 5 + ["Vexa", "Nimbo", "Ostra", "Kelm", "Brio"]
    return [listing(f"A{i}", brand, 6000 + 100 * i, sponsored=i < 8) for i, brand in enumerate(brands)]


def test_crowded_market_scores_high():
    score = score_market_pressure(crowded_market())

    assert score.components == {"review_volume": 2, "sponsored_density": 2, "brand_dominance": 2}
    assert score.points == 6
    assert score.level == "High"


def test_mixed_market_scores_moderate():
    listings = [
        listing("A", "One", 1000, sponsored=True),
        listing("B", "Two", 1000, sponsored=True),
        listing("C", "Three", 1000, sponsored=True),
        listing("D", "Four", 1000, sponsored=True),
        listing("E", "Five", None),
    ]
    score = score_market_pressure(listings)

    assert score.components == {"review_volume": 1, "sponsored_density": 1, "brand_dominance": 1}
    assert score.points == 3
    assert score.level == "Moderate"


def test_light_market_scores_low():
    brands = ["Logix", "Logix"] + [f"Brand{i}" for i in range(8)]
    listings = [listing(f"A{i}", brand, 600, sponsored=i < 2) for i, brand in enumerate(brands)]

    score = score_market_pressure(listings)

    assert score.components == {"review_volume": 0, "sponsored_density": 0, "brand_dominance": 1}
    assert score.level == "Low"


def test_no_listings_cannot_be_scored():
    assert score_market_pressure([]) is None


@pytest.mark.parametrize("points, level", [(0, "Low"), (2, "Low"), (3, "Moderate"), (4, "Moderate"), (5, "High"), (6, "High")])
def test_pressure_levels(points, level):
    assert pressure_level(points) == level


@pytest.mark.parametrize("margin, cls", [(None, None), (-3.0, "thin"), (14.99, "thin"), (15.0, "okay"), (24.99, "okay"), (25.0, "strong")])
def test_margin_classes(margin, cls):
    assert classify_margin(margin) == cls


def test_interpretation_combines_margin_and_pressure():
    score = score_market_pressure(crowded_market())
    assert score.level == "High"
    assert "Not viable" in interpret("thin", score)
    assert "could not be scored" in interpret("okay", None)
    assert "positive selling price" in interpret(None, score)


def test_referral_percentages_by_category():
    assert referral_pct_for("Home & Kitchen") == 15.0
    assert referral_pct_for("Electronics") == 8.0
    assert referral_pct_for("Toys & Games") == 15.0
    assert referral_pct_for(None) == 15.0


def test_referral_fee_rounds_half_up_to_cents():
    assert referral_fee_for(24.99, "Home & Kitchen") == 3.75


def test_estimate_is_low_confidence():
    quote = estimate_fees("B0A1", 20.0, "Electronics")

    assert quote.referral_fee == 1.6
    assert quote.fulfillment_fee == 3.5
    assert quote.total_fees == 5.1
    assert quote.source == "estimated"
    assert quote_to_wire(quote)["confidence"] == "low"
