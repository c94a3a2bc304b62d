"""Data model shared by the run session, chat controller and guided subflow."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Literal

from market_copilot.errors import RunFailed

Provenance = Literal["cached-estimate", "verified-lookup"]
FeeSource = Literal["exact", "estimated"]
MarginClass = Literal["thin", "okay", "strong"]
PressureLevel = Literal["Low", "Moderate", "High"]


class RunState(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    STALE = "stale"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETE, RunState.FAILED, RunState.STALE)


# Forward-only ordering; terminal states share the last rank.
_RUN_STATE_RANK = {
    RunState.IDLE: 0,
    RunState.SUBMITTED: 1,
    RunState.STREAMING: 2,
    RunState.COMPLETE: 3,
    RunState.FAILED: 3,
    RunState.STALE: 3,
}


@dataclass(frozen=True)
class RunToken:
    """Client-side correlation id for one query submission."""

    value: str
    query: str

    @classmethod
    def new(cls, query: str) -> "RunToken":
        return cls(value=uuid.uuid4().hex, query=query)

    def __str__(self) -> str:
        return self.value[:8]


@dataclass
class RunRecord:
    """Lifecycle of one token."""

    token: RunToken
    state: RunState = RunState.IDLE

    def advance(self, new_state: RunState) -> bool:
        """Move forward; returns False if the transition would go backwards."""
        if self.state.terminal:
            return False
        if _RUN_STATE_RANK[new_state] < _RUN_STATE_RANK[self.state]:
            return False
        self.state = new_state
        return True


@dataclass(frozen=True)
class StreamRecord:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "StreamRecord":
        record_type = str(obj.get("type", ""))
        if record_type == "error":
            err = obj.get("error") or obj.get("message") or "Analysis failed"
            if isinstance(err, dict):
                err = err.get("message") or str(err)
            return cls(type="error", error=str(err))
        payload = obj.get("payload")
        if not isinstance(payload, dict):
            # Flat records carry their fields next to the discriminant.
            payload = {k: v for k, v in obj.items() if k != "type"}
        return cls(type=record_type, payload=payload)


@dataclass
class ProgressState:
    current_pct: float = 0.0
    target_pct: float = 0.0
    stage_label: str = "Starting analysis"
    last_stage_change_at: float = 0.0


# Backend source tag -> provenance; unknown tags are cached estimates.
PROVENANCE_BY_SOURCE: dict[str, Provenance] = {
    "rainforest_product": "verified-lookup",
    "rainforest": "verified-lookup",
    "verified-lookup": "verified-lookup",
    "verified": "verified-lookup",
    "live": "verified-lookup",
    "page1_estimate": "cached-estimate",
    "cached-estimate": "cached-estimate",
}


@dataclass(frozen=True)
class Citation:
    item_id: str
    provenance: Provenance = "cached-estimate"
    label: str | None = None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "Citation":
        item_id = obj.get("itemId") or obj.get("asin") or obj.get("item_id") or obj.get("id") or ""
        source = obj.get("provenance") or obj.get("source") or ""
        provenance = PROVENANCE_BY_SOURCE.get(str(source), "cached-estimate")
        return cls(item_id=str(item_id), provenance=provenance, label=obj.get("label"))


@dataclass
class ChatTurn:
    role: Literal["user", "assistant"]
    content: str
    citations: list[Citation] | None = None


class SelectionSet:
    """Set of selected item ids shared by the product view and the chat."""

    def __init__(self, ids: Iterable[str] = ()):
        self._ids: set[str] = set(ids)
        self._listeners: list[Callable[[frozenset[str]], None]] = []

    def subscribe(self, listener: Callable[[frozenset[str]], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        snapshot = self.ids
        for listener in list(self._listeners):
            listener(snapshot)

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._ids)

    def add(self, item_id: str) -> None:
        if item_id not in self._ids:
            self._ids.add(item_id)
            self._changed()

    def discard(self, item_id: str) -> None:
        if item_id in self._ids:
            self._ids.discard(item_id)
            self._changed()

    def toggle(self, item_id: str) -> None:
        if item_id in self._ids:
            self.discard(item_id)
        else:
            self.add(item_id)

    def replace(self, ids: Iterable[str]) -> None:
        new_ids = set(ids)
        if new_ids != self._ids:
            self._ids = new_ids
            self._changed()

    def clear(self) -> None:
        self.replace(())

    def only(self) -> str | None:
        """The single selected id, or None unless exactly one is selected."""
        if len(self._ids) == 1:
            return next(iter(self._ids))
        return None

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._ids

    def __iter__(self):
        return iter(sorted(self._ids))


@dataclass
class EscalationRequest:
    message: str
    target_ids: frozenset[str]
    credit_cost: float
    original_question: str
    decision: Literal["pending", "confirmed", "cancelled"] = "pending"


@dataclass(frozen=True)
class FeeQuote:
    item_id: str
    price: float
    referral_fee: float
    fulfillment_fee: float
    total_fees: float
    source: FeeSource = "exact"
    confidence: str | float | None = None

    @classmethod
    def from_json(cls, item_id: str, price: float, obj: dict[str, Any]) -> "FeeQuote":
        referral = float(obj.get("referralFee") or 0.0)
        fulfillment = float(obj.get("fulfillmentFee") or 0.0)
        total = obj.get("totalFees")
        total_fees = round(float(total), 2) if total is not None else round(referral + fulfillment, 2)
        source: FeeSource = "exact" if obj.get("source") == "exact" else "estimated"
        return cls(
            item_id=item_id,
            price=price,
            referral_fee=referral,
            fulfillment_fee=fulfillment,
            total_fees=total_fees,
            source=source,
            confidence=obj.get("confidence"),
        )


@dataclass(frozen=True)
class ProfitabilityInputs:
    cogs: float | None = None
    ship_in: float | None = None
    other_costs: float | None = None

    def merge(self, update: "ProfitabilityInputs") -> "ProfitabilityInputs":
        """Fill fields from ``update``; a missing field never erases a known one."""
        return replace(
            self,
            cogs=update.cogs if update.cogs is not None else self.cogs,
            ship_in=update.ship_in if update.ship_in is not None else self.ship_in,
            other_costs=update.other_costs if update.other_costs is not None else self.other_costs,
        )

    @property
    def ready(self) -> bool:
        return self.cogs is not None and self.ship_in is not None

    @property
    def total_costs(self) -> float:
        return (self.cogs or 0.0) + (self.ship_in or 0.0) + (self.other_costs or 0.0)

    def missing(self) -> list[str]:
        labels = []
        if self.cogs is None:
            labels.append("cost of goods")
        if self.ship_in is None:
            labels.append("inbound shipping")
        return labels


@dataclass(frozen=True)
class Listing:
    item_id: str
    title: str = ""
    brand: str | None = None
    price: float | None = None
    reviews: int | None = None
    rating: float | None = None
    is_sponsored: bool = False
    category: str | None = None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> "Listing | None":
        item_id = obj.get("asin") or obj.get("item_id") or obj.get("itemId")
        if not item_id:
            return None
        price = obj.get("price")
        reviews = obj.get("reviews", obj.get("review_count"))
        rating = obj.get("rating")
        return cls(
            item_id=str(item_id),
            title=str(obj.get("title") or ""),
            brand=obj.get("brand") or None,
            price=float(price) if isinstance(price, (int, float)) and price > 0 else None,
            reviews=int(reviews) if isinstance(reviews, (int, float)) else None,
            rating=float(rating) if isinstance(rating, (int, float)) else None,
            is_sponsored=bool(obj.get("is_sponsored") or obj.get("sponsored")),
            category=obj.get("category") or obj.get("main_category") or None,
        )


def _extract_listings(payload: dict[str, Any]) -> list[dict[str, Any]]:
    for key in ("page_one_listings", "products", "listings"):
        value = payload.get(key)
        if isinstance(value, list) and value:
            return value
    decision = payload.get("decision")
    if isinstance(decision, dict):
        for key in ("page_one_listings", "products"):
            value = decision.get(key)
            if isinstance(value, list) and value:
                return value
    return []


@dataclass
class ResultSet:
    """Committed, canonical result of one run."""

    run_id: str
    query: str
    listings: list[Listing] = field(default_factory=list)
    decision: dict[str, Any] | None = None
    market_snapshot: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)
    partial: bool = False

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        query: str,
        require_items: bool = True,
        fallback_listings: Iterable[Listing] = (),
    ) -> "ResultSet":
        run_id = payload.get("analysisRunId") or payload.get("analysis_run_id")
        if not run_id:
            raise RunFailed("Analysis failed to produce a snapshot or run ID", kind="malformed")

        listings = [l for l in (Listing.from_json(o) for o in _extract_listings(payload) if isinstance(o, dict)) if l]
        if not listings:
            listings = list(fallback_listings)
        if require_items and not listings:
            raise RunFailed("Analysis failed: no listings returned", kind="malformed")

        decision = payload.get("decision") if isinstance(payload.get("decision"), dict) else None
        snapshot = payload.get("market_snapshot") or payload.get("snapshot")
        if not isinstance(snapshot, dict) and decision:
            snapshot = decision.get("market_snapshot")
        warnings = payload.get("warnings") or []
        data_quality = payload.get("data_quality") or {}
        return cls(
            run_id=str(run_id),
            query=query,
            listings=listings,
            decision=decision,
            market_snapshot=snapshot if isinstance(snapshot, dict) else None,
            warnings=[str(w) for w in warnings],
            partial=payload.get("status") == "partial" or bool(data_quality.get("fallback_used")),
        )

    def listing(self, item_id: str) -> Listing | None:
        for listing in self.listings:
            if listing.item_id == item_id:
                return listing
        return None


@dataclass(frozen=True)
class PressureScore:
    points: int
    level: PressureLevel
    components: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ProfitBreakdown:
    price: float
    total_fees: float
    total_costs: float
    profit: float
    margin_pct: float | None
    margin_class: MarginClass | None
    break_even_price: float
    fee_pct: float | None
    pressure: PressureScore | None = None
    interpretation: str = ""
