"""Async HTTP client for the analysis, chat and fee-quote endpoints."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

import httpx
from pydantic import ValidationError

from market_copilot.config.settings import get_settings
from market_copilot.data.wire import FeeQuoteReply, FeeQuoteRequest

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"
EVENT_STREAM = "text/event-stream"


class BackendClient:
    """Thin wrapper over ``httpx.AsyncClient`` for the three backend calls.

    The analyze and chat calls are streamed: callers receive the open
    response and read it incrementally. Status handling is left to the
    caller since each endpoint gives statuses a different meaning.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.api_base
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.request_timeout_seconds,
            transport=transport,
        )

    @asynccontextmanager
    async def open_analyze(self, query: str) -> AsyncIterator[httpx.Response]:
        """POST a keyword analysis; the server picks NDJSON or single-shot JSON."""
        payload = {"input_type": "keyword", "input_value": query}
        headers = {"Accept": f"{NDJSON}, application/json"}
        async with self._client.stream("POST", "/analyze", json=payload, headers=headers) as response:
            yield response

    @asynccontextmanager
    async def open_chat(
        self,
        run_id: str,
        message: str,
        selected_ids: list[str],
        escalation_confirmed: bool = False,
        escalation_target_ids: list[str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """POST one chat turn and stream the event response."""
        payload: dict[str, Any] = {
            "runId": run_id,
            "message": message,
            "selectedIds": selected_ids,
        }
        if escalation_confirmed:
            payload["escalationConfirmed"] = True
            payload["escalationTargetIds"] = escalation_target_ids or []
        headers = {"Accept": EVENT_STREAM}
        async with self._client.stream("POST", "/chat", json=payload, headers=headers) as response:
            yield response

    async def fee_quote(self, item_id: str, price: float) -> dict[str, Any]:
        """Request fees for one item at one price.

        Non-2xx replies are normalized into the ``{ok: false}`` shape so the
        caller has a single failure path.
        """
        body = FeeQuoteRequest(item_id=item_id, price=price).model_dump(by_alias=True)
        response = await self._client.post("/fees-estimate", json=body)
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if response.status_code >= 400:
            reason = data.get("reason") or data.get("message") or data.get("error") or f"Fee lookup failed ({response.status_code})"
            data = {"ok": False, "reason": reason, "fallback": data.get("fallback")}
        try:
            return FeeQuoteReply.model_validate(data).to_wire()
        except ValidationError as e:
            logger.warning(f"Malformed fee quote reply for {item_id}: {e.error_count()} error(s)")
            return {"ok": False, "reason": "Fee lookup returned a malformed reply"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


async def read_json(response: httpx.Response) -> dict[str, Any]:
    """Read a (possibly streamed) response body as a JSON object."""
    body = await response.aread()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        logger.warning(f"Non-JSON body from {response.request.url.path} ({response.status_code})")
        return {}
    return data if isinstance(data, dict) else {}


@lru_cache(maxsize=1)
def get_backend_client() -> BackendClient:
    """Process-wide default client configured from settings."""
    return BackendClient()
