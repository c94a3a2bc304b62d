"""Integration tests for the FastAPI contract backend."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from market_copilot.agents.stream_decoder import EventStreamDecoder, decode_all
from market_copilot.api.main import app, rate_limiter
from market_copilot.llm.clients import NDJSON


@pytest.fixture
def client():
    """Create test client."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


def analyze(client, keyword: str, accept: str = "application/json"):
    return client.post("/analyze", json={"input_type": "keyword", "input_value": keyword}, headers={"Accept": accept})


def chat_events(response) -> list[dict]:
    decoder = EventStreamDecoder()
    events = decoder.feed(response.content)
    assert decoder.done
    return events


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_analyze_single_shot(client):
    response = analyze(client, "  Wireless   Mouse ")

    assert response.status_code == 200
    data = response.json()
    assert data["analysisRunId"]
    assert len(data["page_one_listings"]) == 5
    assert data["decision"]["verdict"] == "CAUTION"


def test_analyze_streams_ndjson_when_accepted(client):
    response = analyze(client, "wireless mouse", accept=f"{NDJSON}, application/json")

    assert response.headers["content-type"].startswith(NDJSON)
    records, complete = decode_all([response.content])
    assert [r.type for r in records] == ["partial", "partial", "complete"]
    assert records[0].payload["stage"] == "fetching"
    assert complete.payload["analysisRunId"]


def test_unknown_keyword_is_queued(client):
    response = analyze(client, "left handed spatula")

    assert response.status_code == 202
    assert response.json()["status"] == "queued"


def test_blank_keyword_is_rejected(client):
    response = client.post("/analyze", json={"input_type": "keyword", "input_value": "   "})
    assert response.status_code == 422


def test_burst_of_requests_gets_retry_later(client):
    statuses = [analyze(client, "yoga mat").status_code for _ in range(6)]

    assert statuses[:5] == [200] * 5
    assert statuses[5] == 503


def test_chat_requires_known_run(client):
    response = client.post("/chat", json={"runId": "nope", "message": "hello", "selectedIds": []})
    assert response.status_code == 404


def test_chat_answer_has_content_and_citations(client):
    run_id = analyze(client, "wireless mouse").json()["analysisRunId"]
    response = client.post("/chat", json={"runId": run_id, "message": "summarize page 1", "selectedIds": ["B07X"]})

    events = chat_events(response)
    content = "".join(e.get("content", "") for e in events)
    citations = [e["metadata"] for e in events if "metadata" in e]
    assert "5 listings" in content
    assert citations[-1]["type"] == "citations"
    assert citations[-1]["citations"][0]["asin"] == "B07X"


def test_chat_live_question_requires_confirmation(client):
    run_id = analyze(client, "wireless mouse").json()["analysisRunId"]
    response = client.post("/chat", json={"runId": run_id, "message": "is it in stock right now?", "selectedIds": ["B07X", "B09Q"]})

    events = chat_events(response)
    assert events == [
        {
            "metadata": {
                "type": "escalation_confirmation_required",
                "message": "That needs data newer than this analysis.",
                "targetIds": ["B07X", "B09Q"],
                "creditCost": 2,
            }
        }
    ]


def test_confirmed_live_question_returns_verified_citations(client):
    run_id = analyze(client, "wireless mouse").json()["analysisRunId"]
    response = client.post(
        "/chat",
        json={
            "runId": run_id,
            "message": "is it in stock right now?",
            "selectedIds": ["B07X"],
            "escalationConfirmed": True,
            "escalationTargetIds": ["B07X"],
        },
    )

    events = chat_events(response)
    citations = events[-1]["metadata"]["citations"]
    assert citations == [{"asin": "B07X", "provenance": "verified-lookup"}]


def test_chat_fee_question_signals_guided_intent(client):
    run_id = analyze(client, "wireless mouse").json()["analysisRunId"]
    response = client.post("/chat", json={"runId": run_id, "message": "what are the fees?", "selectedIds": ["B07X"]})

    assert chat_events(response)[0] == {"metadata": {"type": "guided_intent_detected"}}


def test_exact_fee_quote(client):
    response = client.post("/fees-estimate", json={"itemId": "B07X", "price": 24.99})

    assert response.json() == {
        "ok": True,
        "source": "exact",
        "referralFee": 3.75,
        "fulfillmentFee": 5.4,
        "totalFees": 9.15,
        "confidence": "high",
    }


def test_missing_fee_data_offers_estimate(client):
    data = client.post("/fees-estimate", json={"itemId": "B0A1", "price": 14.49}).json()

    assert data["ok"] is False
    assert "B0A1" in data["reason"]
    assert data["fallback"]["source"] == "estimated"
    assert data["fallback"]["confidence"] == "low"


def test_fee_quote_rejects_non_positive_price(client):
    response = client.post("/fees-estimate", json={"itemId": "B07X", "price": 0})
    assert response.status_code == 422


def test_run_serves_app_with_uvicorn():
    from market_copilot.api import main

    with patch("uvicorn.run") as serve:
        main.run()

    target = serve.call_args.args[0]
    assert target == "market_copilot.api.main:app"
    assert serve.call_args.kwargs["port"] == main.settings.api_port
