"""Guided fee quote and profitability subflow for one selected product.

The subflow runs inside the chat controller. It needs exactly one selected
item, resolves a working price, looks up exact fees within a fixed timeout,
then collects cost-of-goods and inbound shipping from free-form turns until
it can present a profit breakdown. Any selection change throws the whole
thing away.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from market_copilot.agents.cost_parser import parse_cost_statement, parse_money
from market_copilot.agents.pressure import classify_margin, interpret, score_market_pressure
from market_copilot.config.settings import get_settings
from market_copilot.data.schema import FeeQuote, Listing, ProfitabilityInputs, ProfitBreakdown, ResultSet

logger = logging.getLogger(__name__)

FeeLookup = Callable[[str, float], Awaitable[dict[str, Any]]]

SELECT_ONE_MESSAGE = (
    "Select exactly one product to run fees and profitability. "
    "Comparisons between two products are available from the product table."
)


class SubflowState(str, Enum):
    INACTIVE = "inactive"
    AWAITING_PRICE = "awaiting_price"
    QUOTING = "quoting"
    FEE_FAILED = "fee_failed"
    COLLECTING = "collecting"
    READY = "ready"


def money(value: float) -> str:
    return f"${value:,.2f}"


def compute_breakdown(
    price: float,
    quote: FeeQuote,
    inputs: ProfitabilityInputs,
    listings: Iterable[Listing] = (),
) -> ProfitBreakdown:
    """Profit, margin and interpretation for one price and fee quote."""
    total_costs = round(inputs.total_costs, 2)
    profit = round(price - quote.total_fees - total_costs, 2)
    margin_pct = round(100 * profit / price, 2) if price > 0 else None
    fee_pct = round(100 * quote.total_fees / price, 2) if price > 0 else None
    margin_class = classify_margin(margin_pct)
    pressure = score_market_pressure(listings)
    return ProfitBreakdown(
        price=price,
        total_fees=quote.total_fees,
        total_costs=total_costs,
        profit=profit,
        margin_pct=margin_pct,
        margin_class=margin_class,
        break_even_price=round(quote.total_fees + total_costs, 2),
        fee_pct=fee_pct,
        pressure=pressure,
        interpretation=interpret(margin_class, pressure),
    )


def format_breakdown(item_id: str, quote: FeeQuote, inputs: ProfitabilityInputs, breakdown: ProfitBreakdown) -> str:
    other = inputs.other_costs or 0.0
    lines = [
        f"Fees & profit for {item_id} at {money(breakdown.price)}",
        f"- Referral fee: {money(quote.referral_fee)}",
        f"- Fulfillment fee: {money(quote.fulfillment_fee)}",
        f"- Total fees: {money(quote.total_fees)} ({quote.source})",
        f"- Costs: {money(breakdown.total_costs)} (COGS {money(inputs.cogs or 0.0)} + inbound {money(inputs.ship_in or 0.0)} + other {money(other)})",
        f"- Profit per unit: {money(breakdown.profit)}",
    ]
    if breakdown.margin_pct is not None:
        lines.append(f"- Margin: {breakdown.margin_pct:.1f}% ({breakdown.margin_class})")
    lines.append(f"- Break-even price: {money(breakdown.break_even_price)}")
    if breakdown.pressure is not None:
        lines.append(f"Market pressure: {breakdown.pressure.level} ({breakdown.pressure.points}/6).")
    lines.append(breakdown.interpretation)
    return "\n".join(lines)


class GuidedSubflow:
    def __init__(
        self,
        fee_lookup: FeeLookup,
        emit: Callable[[str], None],
        timeout: float | None = None,
    ):
        self.fee_lookup = fee_lookup
        self.emit = emit
        self.timeout = timeout if timeout is not None else get_settings().fee_quote_timeout_seconds
        self._generation = 0
        self._clear()

    def _clear(self) -> None:
        self.state = SubflowState.INACTIVE
        self.item_id: str | None = None
        self.price: float | None = None
        self.quote: FeeQuote | None = None
        self.fallback: FeeQuote | None = None
        self.failure_reason: str | None = None
        self.inputs = ProfitabilityInputs()
        self.breakdown: ProfitBreakdown | None = None
        self.listings: list[Listing] = []

    @property
    def active(self) -> bool:
        return self.state is not SubflowState.INACTIVE

    def invalidate(self) -> None:
        """Drop everything, including any lookup still in flight."""
        if self.active:
            logger.debug(f"Guided subflow for {self.item_id} invalidated")
        self._generation += 1
        self._clear()

    async def begin(self, selected_ids: Iterable[str], result: ResultSet | None) -> bool:
        """Precondition check and price resolution. Returns False if blocked."""
        self.invalidate()
        ids = sorted(set(selected_ids))
        if len(ids) != 1:
            self.emit(SELECT_ONE_MESSAGE)
            return False

        self.item_id = ids[0]
        self.listings = list(result.listings) if result is not None else []
        listing = result.listing(self.item_id) if result is not None else None
        if listing is None or listing.price is None:
            self.state = SubflowState.AWAITING_PRICE
            self.emit(f"I don't have a selling price for {self.item_id}. What price should I use?")
            return True

        await self._quote(listing.price)
        return True

    async def handle_turn(self, text: str) -> bool:
        """Consume a user turn if it carries recognized inputs.

        Returns False when the turn is not for the subflow, so the caller
        can treat it as ordinary chat.
        """
        if not self.active or self.state is SubflowState.QUOTING:
            return False

        statement = parse_cost_statement(text)
        if self.state is SubflowState.AWAITING_PRICE:
            price = statement.price if statement.price is not None else parse_money(text)
            if price is None:
                return False
            self.inputs = self.inputs.merge(statement.inputs)
            await self._quote(price)
            return True

        if statement.empty:
            return False

        self.inputs = self.inputs.merge(statement.inputs)
        if statement.price is not None and statement.price != self.price:
            # Fees depend on price; never reuse the old quote.
            await self._quote(statement.price)
            return True

        if self.state is SubflowState.FEE_FAILED:
            self.emit(self._failure_prompt())
            return True
        self._advance()
        return True

    async def accept_fallback(self) -> bool:
        if self.state is not SubflowState.FEE_FAILED or self.fallback is None:
            return False
        self.quote = self.fallback
        self.fallback = None
        self.failure_reason = None
        self.state = SubflowState.COLLECTING
        self.emit(self._fee_summary(self.quote))
        self._advance()
        return True

    async def retry_at(self, price: float | None = None) -> bool:
        if self.state is not SubflowState.FEE_FAILED:
            return False
        new_price = price if price is not None else self.price
        if new_price is None or new_price <= 0:
            return False
        await self._quote(new_price)
        return True

    async def _quote(self, price: float) -> None:
        self._generation += 1
        generation = self._generation
        item_id = self.item_id
        self.price = price
        self.quote = None
        self.fallback = None
        self.failure_reason = None
        self.breakdown = None
        self.state = SubflowState.QUOTING

        reply: dict[str, Any] | None = None
        reason: str | None = None
        try:
            reply = await asyncio.wait_for(self.fee_lookup(item_id, price), timeout=self.timeout)
        except asyncio.TimeoutError:
            reason = f"Fee lookup timed out after {self.timeout:g}s"
        except Exception as e:
            reason = f"Fee lookup failed: {e}"

        if generation != self._generation:
            logger.debug(f"Discarding fee reply for {item_id} at {price}; subflow moved on")
            return

        if reply is not None and reply.get("ok"):
            self.quote = FeeQuote.from_json(item_id, price, reply)
            self.state = SubflowState.COLLECTING
            self.emit(self._fee_summary(self.quote))
            self._advance()
            return

        if reply is not None:
            reason = reply.get("reason") or "Fee lookup failed"
            fallback = reply.get("fallback")
            if isinstance(fallback, dict):
                self.fallback = FeeQuote.from_json(item_id, price, {**fallback, "source": "estimated"})
        logger.warning(f"Fee lookup for {item_id} at {price} failed: {reason}")
        self.failure_reason = reason
        self.state = SubflowState.FEE_FAILED
        self.emit(self._failure_prompt())

    def _advance(self) -> None:
        if self.quote is None or self.price is None:
            return
        if not self.inputs.ready:
            self.state = SubflowState.COLLECTING
            missing = " and ".join(self.inputs.missing())
            self.emit(f"To finish the profit estimate I need your {missing} per unit.")
            return
        self.breakdown = compute_breakdown(self.price, self.quote, self.inputs, self.listings)
        self.state = SubflowState.READY
        self.emit(format_breakdown(self.item_id, self.quote, self.inputs, self.breakdown))

    def _fee_summary(self, quote: FeeQuote) -> str:
        label = "Exact" if quote.source == "exact" else "Estimated"
        return (
            f"{label} fees for {quote.item_id} at {money(quote.price)}: "
            f"referral {money(quote.referral_fee)} + fulfillment {money(quote.fulfillment_fee)} "
            f"= {money(quote.total_fees)}."
        )

    def _failure_prompt(self) -> str:
        text = f"{self.failure_reason}."
        if self.fallback is not None:
            text += (
                f" An estimated total of {money(self.fallback.total_fees)} is available "
                "(lower confidence). Use the estimate, or retry the exact lookup at a different price?"
            )
        else:
            text += " Retry the lookup, or give me a different price to try."
        return text
