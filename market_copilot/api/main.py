"""FastAPI contract backend for the Market Copilot client.

Serves the analyze, chat and fee-quote endpoints over an in-memory
snapshot store. Market metrics and chat answers are canned: this service
exists so the client can be developed and tested against the real wire
formats.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from collections import defaultdict
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from market_copilot.agents.cost_parser import parse_cost_statement
from market_copilot.agents.fees import estimate_fees, quote_to_wire, referral_fee_for
from market_copilot.config.settings import get_settings
from market_copilot.data.wire import AnalyzeRequest, ChatRequest, FeeEstimate, FeeQuoteReply, FeeQuoteRequest
from market_copilot.llm.clients import EVENT_STREAM, NDJSON

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# ============================================
# Rate Limiting
# ============================================

class RateLimiter:
    """In-memory sliding window limiter per client address."""

    def __init__(self, requests_per_minute: int = 30, burst_limit: int = 5):
        self.requests_per_minute = requests_per_minute
        self.burst_limit = burst_limit
        self._requests: dict[str, list[float]] = defaultdict(list)

    def is_allowed(self, client_ip: str) -> bool:
        now = time.time()
        self._requests[client_ip] = [ts for ts in self._requests[client_ip] if ts > now - 60]
        if len(self._requests[client_ip]) >= self.requests_per_minute:
            return False
        # Burst window is two seconds.
        if sum(1 for ts in self._requests[client_ip] if ts > now - 2) >= self.burst_limit:
            return False
        self._requests[client_ip].append(now)
        return True

    def reset(self) -> None:
        self._requests.clear()


rate_limiter = RateLimiter(
    requests_per_minute=settings.rate_limit_per_minute,
    burst_limit=settings.rate_limit_burst,
)


# ============================================
# Snapshot store
# ============================================

def _listing(asin: str, title: str, brand: str, price: float, reviews: int, rating: float, sponsored: bool = False, category: str = "Electronics") -> dict:
    return {
        "asin": asin,
        "title": title,
        "brand": brand,
        "price": price,
        "reviews": reviews,
        "rating": rating,
        "is_sponsored": sponsored,
        "category": category,
    }


SNAPSHOTS: dict[str, dict[str, Any]] = {
    "wireless mouse": {
        "listings": [
            _listing("B07X", "Ergonomic Wireless Mouse, 2.4G", "Vexa", 24.99, 1840, 4.4, category="Home & Kitchen"),
            _listing("B08M", "Silent Click Wireless Mouse", "Logix", 19.99, 12650, 4.6, sponsored=True),
            _listing("B09Q", "Rechargeable Bluetooth Mouse", "Logix", 29.99, 8420, 4.5),
            _listing("B0A1", "Compact Travel Mouse", "Nimbo", 14.49, 310, 4.1, sponsored=True),
            _listing("B0B2", "Vertical Wireless Mouse", "Logix", 34.99, 5210, 4.3),
        ],
        "market_snapshot": {"avg_price": 24.89, "avg_reviews": 5686, "sponsored_pct": 40.0},
    },
    "yoga mat": {
        "listings": [
            _listing("B01Y", "Non-Slip Yoga Mat 6mm", "Zenfit", 27.95, 21400, 4.7, category="Sports"),
            _listing("B02Y", "Travel Yoga Mat", "Asana Co", 39.00, 960, 4.4, category="Sports"),
            _listing("B03Y", "TPE Yoga Mat with Strap", "Zenfit", 22.99, 4380, 4.5, sponsored=True, category="Sports"),
        ],
        "market_snapshot": {"avg_price": 29.98, "avg_reviews": 8913, "sponsored_pct": 33.3},
    },
}

# Exact fulfillment fees by item; referral still depends on the quoted price.
FULFILLMENT_FEES: dict[str, float] = {
    "B07X": 5.40,
    "B08M": 4.75,
    "B09Q": 5.10,
    "B0B2": 6.05,
    "B01Y": 7.20,
}

# run id -> (keyword, listings)
RUNS: dict[str, tuple[str, list[dict]]] = {}

LIVE_DATA_PATTERN = re.compile(r"\b(live|right now|today|current(?:ly)?|verify|latest|real[- ]time)\b", re.IGNORECASE)
GUIDED_PATTERN = re.compile(r"\b(fees?|profit(?:ability)?|margins?)\b", re.IGNORECASE)


def _find_listing(listings: list[dict], item_id: str) -> dict | None:
    return next((l for l in listings if l["asin"] == item_id), None)


def _listing_category(item_id: str) -> str | None:
    for snapshot in SNAPSHOTS.values():
        listing = _find_listing(snapshot["listings"], item_id)
        if listing is not None:
            return listing.get("category")
    return None


def _decision(listings: list[dict]) -> dict:
    brands = [l["brand"] for l in listings]
    top_share = max(brands.count(b) for b in set(brands)) / len(brands)
    verdict = "CAUTION" if top_share >= 0.4 else "GO"
    return {"verdict": verdict, "top_brand_share": round(100 * top_share, 1)}


# ============================================
# App
# ============================================

app = FastAPI(
    title="Market Copilot contract backend",
    description="Analyze, grounded chat and fee quote endpoints over cached snapshots",
    version="0.3.0",
)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _ndjson(record: dict) -> bytes:
    return (json.dumps(record) + "\n").encode()


def _sse(event: dict | str) -> bytes:
    data = event if isinstance(event, str) else json.dumps(event)
    return f"data: {data}\n\n".encode()


@app.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "version": app.version}


@app.post("/analyze")
async def analyze(request: Request, payload: AnalyzeRequest):
    if not rate_limiter.is_allowed(_client_ip(request)):
        logger.info("Analyze rate limited; asking client to retry")
        return JSONResponse(
            status_code=503,
            content={"error": "Service busy", "details": "Too many requests"},
            headers={"Retry-After": "2"},
        )

    keyword = payload.input_value.lower()
    snapshot = SNAPSHOTS.get(keyword)
    if snapshot is None:
        logger.info(f"No cached snapshot for {keyword!r}; queued for background processing")
        return JSONResponse(
            status_code=202,
            content={"status": "queued", "message": "Analysis queued. Ready in ~5–10 minutes."},
        )

    run_id = uuid.uuid4().hex[:12]
    listings = snapshot["listings"]
    RUNS[run_id] = (keyword, listings)
    result = {
        "analysisRunId": run_id,
        "page_one_listings": listings,
        "market_snapshot": snapshot["market_snapshot"],
        "decision": _decision(listings),
        "warnings": [],
    }
    logger.info(f"Analysis {run_id} for {keyword!r}: {len(listings)} listings")

    if NDJSON not in request.headers.get("accept", ""):
        return JSONResponse(content=result)

    async def records() -> AsyncIterator[bytes]:
        half = max(1, len(listings) // 2)
        yield _ndjson({"type": "partial", "stage": "fetching", "page_one_listings": listings[:half]})
        await asyncio.sleep(0)
        yield _ndjson({"type": "partial", "stage": "computing", "page_one_listings": listings[half:]})
        yield _ndjson({"type": "complete", **result})

    return StreamingResponse(records(), media_type=NDJSON)


@app.post("/chat")
async def chat(payload: ChatRequest):
    run = RUNS.get(payload.run_id)
    if run is None:
        return JSONResponse(status_code=404, content={"error": f"Unknown analysis run {payload.run_id}"})
    keyword, listings = run
    selected = [i for i in payload.selected_ids if _find_listing(listings, i) is not None]

    async def events() -> AsyncIterator[bytes]:
        if LIVE_DATA_PATTERN.search(payload.message):
            targets = payload.escalation_target_ids or selected or [listings[0]["asin"]]
            if not payload.escalation_confirmed:
                yield _sse({
                    "metadata": {
                        "type": "escalation_confirmation_required",
                        "message": "That needs data newer than this analysis.",
                        "targetIds": targets,
                        "creditCost": len(targets),
                    }
                })
                yield _sse("[DONE]")
                return
            yield _sse({"metadata": {"type": "escalation_message", "message": f"Looking up {', '.join(targets)}..."}})
            yield _sse({"content": f"Live lookup complete for {', '.join(targets)}. "})
            yield _sse({"content": "Prices and reviews match the cached snapshot."})
            yield _sse({"metadata": {"type": "citations", "citations": [{"asin": t, "provenance": "verified-lookup"} for t in targets]}})
            yield _sse("[DONE]")
            return

        if GUIDED_PATTERN.search(payload.message):
            yield _sse({"metadata": {"type": "guided_intent_detected"}})
            yield _sse({"content": "Let's work through fees and profit for the selected product."})
            yield _sse("[DONE]")
            return

        statement = parse_cost_statement(payload.message)
        if statement.cogs is not None:
            yield _sse({
                "metadata": {
                    "type": "cost_override_applied",
                    "margin_snapshot": {"cogs": statement.cogs, "ship_in": statement.ship_in},
                }
            })

        cited = [_find_listing(listings, i) for i in selected] or listings[:3]
        avg_price = sum(l["price"] for l in listings) / len(listings)
        for word in f"Page 1 for '{keyword}' has {len(listings)} listings averaging ${avg_price:.2f}. ".split(" "):
            if word:
                yield _sse({"content": word + " "})
        yield _sse({"content": "Cited listings are shown below."})
        yield _sse({"metadata": {"type": "citations", "citations": [{"asin": l["asin"], "label": l["title"]} for l in cited]}})
        yield _sse("[DONE]")

    return StreamingResponse(events(), media_type=EVENT_STREAM)


@app.post("/fees-estimate")
def fees_estimate(payload: FeeQuoteRequest) -> dict:
    fulfillment = FULFILLMENT_FEES.get(payload.item_id)
    category = _listing_category(payload.item_id)
    if fulfillment is None:
        estimate = estimate_fees(payload.item_id, payload.price, category)
        logger.info(f"No exact fees for {payload.item_id}; offering estimate")
        reply = FeeQuoteReply(
            ok=False,
            reason=f"Exact fees are unavailable for {payload.item_id}",
            fallback=FeeEstimate.model_validate(quote_to_wire(estimate)),
        )
        return reply.to_wire()

    referral = referral_fee_for(payload.price, category)
    reply = FeeQuoteReply(
        ok=True,
        source="exact",
        referral_fee=referral,
        fulfillment_fee=fulfillment,
        total_fees=round(referral + fulfillment, 2),
        confidence="high",
    )
    return reply.to_wire()


def run() -> None:
    """Serve the contract backend with uvicorn."""
    import uvicorn

    uvicorn.run("market_copilot.api.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
