"""Market pressure score for Page 1 listings.

Three signals, each bucketed into 0-2 points:

    review volume      average reviews of listings that have any
    sponsored density  number of sponsored placements
    brand dominance    percent share of the most frequent brand

The summed points (0-6) map to Low (0-2), Moderate (3-4) or High (5-6).
The score is a plain calculation over cached data, never an AI opinion.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable

from market_copilot.data.schema import Listing, MarginClass, PressureLevel, PressureScore

REVIEW_BUCKETS = (5000, 1000)
SPONSORED_COUNT_BUCKETS = (8, 4)
BRAND_PCT_BUCKETS = (40, 20)


def _bucket(value: float, thresholds: tuple[float, float]) -> int:
    high, low = thresholds
    if value >= high:
        return 2
    if value >= low:
        return 1
    return 0


def pressure_level(points: int) -> PressureLevel:
    if points <= 2:
        return "Low"
    if points <= 4:
        return "Moderate"
    return "High"


def score_market_pressure(listings: Iterable[Listing]) -> PressureScore | None:
    """Score the listings; None when there is nothing to score."""
    listings = list(listings)
    if not listings:
        return None

    reviewed = [l.reviews for l in listings if l.reviews]
    avg_reviews = sum(reviewed) / len(reviewed) if reviewed else 0.0

    sponsored_count = sum(1 for l in listings if l.is_sponsored)

    brands = Counter(l.brand for l in listings if l.brand)
    top_brand_pct = 100.0 * brands.most_common(1)[0][1] / len(listings) if brands else 0.0

    components = {
        "review_volume": _bucket(avg_reviews, REVIEW_BUCKETS),
        "sponsored_density": _bucket(sponsored_count, SPONSORED_COUNT_BUCKETS),
        "brand_dominance": _bucket(top_brand_pct, BRAND_PCT_BUCKETS),
    }
    points = sum(components.values())
    return PressureScore(points=points, level=pressure_level(points), components=components)


def classify_margin(margin_pct: float | None) -> MarginClass | None:
    if margin_pct is None:
        return None
    if margin_pct >= 25:
        return "strong"
    if margin_pct >= 15:
        return "okay"
    return "thin"


_INTERPRETATIONS: dict[tuple[str, str], str] = {
    ("strong", "Low"): "Healthy margin in a market with little entrenched competition. This looks workable at these costs.",
    ("strong", "Moderate"): "Healthy margin, but expect to spend on launch and reviews to hold a Page 1 position.",
    ("strong", "High"): "The margin is strong, but Page 1 is crowded and brand-heavy. Budget for a long ramp before it pays off.",
    ("okay", "Low"): "Workable margin with light competition. Small cost savings would make it comfortable.",
    ("okay", "Moderate"): "Margin is workable but leaves limited room for ad spend against moderate competition.",
    ("okay", "High"): "Margin is likely too tight to fund the advertising this market demands. Lower costs or a higher price are needed.",
    ("thin", "Low"): "Competition is light, but the margin is thin. Revisit sourcing costs or price before committing.",
    ("thin", "Moderate"): "Thin margin with meaningful competition. This does not look profitable at these inputs.",
    ("thin", "High"): "Thin margin in a high-pressure market. Not viable at these inputs.",
}


def interpret(margin_class: MarginClass | None, pressure: PressureScore | None) -> str:
    if margin_class is None:
        return "Margin can't be computed without a positive selling price."
    if pressure is None:
        return {
            "strong": "Healthy margin at these costs. Market pressure could not be scored for this run.",
            "okay": "Workable margin at these costs. Market pressure could not be scored for this run.",
            "thin": "Thin margin at these costs. Market pressure could not be scored for this run.",
        }[margin_class]
    return _INTERPRETATIONS[(margin_class, pressure.level)]
