"""Deterministic fee estimate used when exact fees are unavailable.

Referral fee comes from a category percentage; fulfillment uses a
conservative standard-size placeholder since dimensions are unknown.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from market_copilot.data.schema import FeeQuote

DEFAULT_REFERRAL_PCT = 15.0
DEFAULT_FULFILLMENT_FEE = 3.5

_CATEGORY_REFERRAL_PCT: tuple[tuple[tuple[str, ...], float], ...] = (
    (("electronics", "tech", "computer"), 8.0),
    (("beauty", "cosmetic", "skincare"), 8.5),
    (("home", "kitchen", "household"), 15.0),
    (("clothing", "apparel", "fashion"), 17.0),
)


def referral_pct_for(category: str | None) -> float:
    if not category:
        return DEFAULT_REFERRAL_PCT
    normalized = category.lower().strip()
    for keywords, pct in _CATEGORY_REFERRAL_PCT:
        if any(k in normalized for k in keywords):
            return pct
    return DEFAULT_REFERRAL_PCT


def referral_fee_for(price: float, category: str | None = None) -> float:
    """Referral fee in cents precision, rounding half up like the marketplace."""
    fee = Decimal(str(price)) * Decimal(str(referral_pct_for(category))) / 100
    return float(fee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def estimate_fees(item_id: str, price: float, category: str | None = None, fulfillment_fee: float | None = None) -> FeeQuote:
    referral_fee = referral_fee_for(price, category)
    fulfillment = round(fulfillment_fee if fulfillment_fee is not None else DEFAULT_FULFILLMENT_FEE, 2)
    return FeeQuote(
        item_id=item_id,
        price=price,
        referral_fee=referral_fee,
        fulfillment_fee=fulfillment,
        total_fees=round(referral_fee + fulfillment, 2),
        source="estimated",
        confidence="low",
    )


def quote_to_wire(quote: FeeQuote) -> dict:
    return {
        "source": quote.source,
        "referralFee": quote.referral_fee,
        "fulfillmentFee": quote.fulfillment_fee,
        "totalFees": quote.total_fees,
        "confidence": quote.confidence,
    }
