"""Parse free-form cost statements from chat turns.

Detects money amounts bound to a small set of labels, e.g.:

- "cogs 8, shipping 3"
- "my cost of goods is $7.50"
- "$1.20 for inbound freight"
- "other costs are 0.50"
- "what if I sell at 27.99"

Labels are matched in table order and each matched span is consumed, so a
generic label ("cost") never re-reads an amount already claimed by a more
specific one ("shipping cost").
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from market_copilot.data.schema import ProfitabilityInputs

NUMBER = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)"
MONEY = r"\$?\s*" + NUMBER + r"(?:\s*(?:dollars|usd|bucks))?"
CONNECTOR = r"(?:\s*[:=~-]\s*|\s+)(?:(?:is|are|of|at|about|around|roughly|approximately|approx\.?|would\s+be|will\s+be|be|per\s+unit|each)\s+)*"
LABEL_SUFFIX = r"(?:\s+(?:costs?|fees?|expenses?))?"

# (field, label alternatives), most specific first
LABELS: tuple[tuple[str, str], ...] = (
    ("ship_in", r"inbound(?:\s+(?:shipping|freight))?|ship(?:ping)?[\s-]+in|shipping(?:\s+to\s+amazon)?|freight"),
    ("other_costs", r"other|misc(?:ellaneous)?|prep|packaging"),
    ("price", r"(?:selling\s+|sale\s+|list\s+|sell\s+)?price|sell(?:ing)?(?:\s+it)?\s+(?:at|for)"),
    ("cogs", r"cogs?|cost\s+of\s+goods(?:\s+sold)?|unit\s+cost|product\s+cost|landed\s+cost|cost\s+per\s+unit|my\s+cost|cost"),
)

_PATTERNS = [
    (
        field_name,
        re.compile(r"\b(?:" + label + r")" + LABEL_SUFFIX + CONNECTOR + MONEY, re.IGNORECASE),
        re.compile(MONEY + r"\s+(?:(?:for|in|of|on)\s+)?(?:the\s+)?(?:" + label + r")\b", re.IGNORECASE),
    )
    for field_name, label in LABELS
]

_ANY_MONEY = re.compile(MONEY, re.IGNORECASE)


def _to_float(raw: str) -> float | None:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


@dataclass(frozen=True)
class CostStatement:
    cogs: float | None = None
    ship_in: float | None = None
    other_costs: float | None = None
    price: float | None = None

    @property
    def inputs(self) -> ProfitabilityInputs:
        return ProfitabilityInputs(cogs=self.cogs, ship_in=self.ship_in, other_costs=self.other_costs)

    @property
    def empty(self) -> bool:
        return self.cogs is None and self.ship_in is None and self.other_costs is None and self.price is None


def parse_cost_statement(text: str) -> CostStatement:
    """Extract labeled money amounts; unlabeled numbers are ignored."""
    remaining = text.lower()
    found: dict[str, float] = {}
    for field_name, forward, backward in _PATTERNS:
        for pattern in (forward, backward):
            match = pattern.search(remaining)
            if not match:
                continue
            value = _to_float(match.group(1))
            if value is None or value < 0:
                continue
            if field_name == "price" and value <= 0:
                continue
            found.setdefault(field_name, value)
            # Blank the span so later, more generic labels cannot reuse it.
            start, end = match.span()
            remaining = remaining[:start] + " " * (end - start) + remaining[end:]
            break
    return CostStatement(**found)


def parse_money(text: str) -> float | None:
    """First positive money-shaped amount in ``text``, labeled or not."""
    for match in _ANY_MONEY.finditer(text):
        value = _to_float(match.group(1))
        if value is not None and value > 0:
            return value
    return None
