"""Chat turn controller: one serialized conversation against the committed run.

Turns go out one at a time. The backend answers with an event stream of
``data: {"content": ...}`` and ``data: {"metadata": {...}}`` events. Metadata
can pause the turn for a paid lookup confirmation, start the guided fee and
profit subflow, or attach citations to the answer.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any

import httpx

from market_copilot.agents.escalation import EscalationGate
from market_copilot.agents.guided import GuidedSubflow
from market_copilot.agents.run_session import RunSession
from market_copilot.agents.stream_decoder import EventStreamDecoder
from market_copilot.config.settings import get_settings
from market_copilot.data.schema import ChatTurn, Citation, EscalationRequest, ResultSet, RunToken
from market_copilot.errors import CopilotError, TurnInFlightError
from market_copilot.llm.clients import BackendClient, read_json

logger = logging.getLogger(__name__)


class ChatState(str, Enum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING_RESPONSE = "streaming_response"
    PENDING_CONFIRMATION = "pending_confirmation"


class ChatFailed(CopilotError):
    """The chat endpoint rejected a turn or the stream broke off."""


class ChatTurnController:
    def __init__(
        self,
        session: RunSession,
        client: BackendClient | None = None,
        stall_timeout: float | None = None,
        fee_timeout: float | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.client = client or session.client
        self.selection = session.selection
        self.stall_timeout = stall_timeout if stall_timeout is not None else settings.chat_stall_timeout_seconds

        self.gate = EscalationGate()
        self.subflow = GuidedSubflow(self.client.fee_quote, self.post_message, timeout=fee_timeout)

        self.state = ChatState.IDLE
        self.turns: list[ChatTurn] = []
        self.status_text: str | None = None
        self.margin_snapshot: dict[str, Any] | None = None
        self._deferred: deque[str] = deque()
        # Bumped on reset so a turn still streaming for an old run drops its output.
        self._epoch = 0

        session.on_reset(self._on_run_reset)
        self.selection.subscribe(self._on_selection_change)

    @property
    def busy(self) -> bool:
        return self.state in (ChatState.AWAITING_RESPONSE, ChatState.STREAMING_RESPONSE)

    @property
    def result(self) -> ResultSet | None:
        return self.session.result

    # ------------------------------------------------------------------
    # Resets
    # ------------------------------------------------------------------

    def reset(self) -> None:
        self._epoch += 1
        self.state = ChatState.IDLE
        self.turns = []
        self.status_text = None
        self.margin_snapshot = None
        self._deferred.clear()
        self.gate.reset()
        self.subflow.invalidate()

    def _on_run_reset(self, token: RunToken) -> None:
        logger.debug(f"Chat reset for run {token}")
        self.reset()

    def _on_selection_change(self, ids: frozenset[str]) -> None:
        self.subflow.invalidate()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def post_message(self, text: str) -> None:
        """Append an assistant message, or queue it while a turn is busy."""
        if self.busy:
            self._deferred.append(text)
        else:
            self.turns.append(ChatTurn(role="assistant", content=text))

    def _flush_deferred(self) -> None:
        while self._deferred:
            self.turns.append(ChatTurn(role="assistant", content=self._deferred.popleft()))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(self, message: str) -> ChatTurn | None:
        """Send one user turn. Returns the assistant turn, if one was produced."""
        if self.state is not ChatState.IDLE:
            raise TurnInFlightError(f"Chat turn already {self.state.value}")
        message = message.strip()
        if not message:
            return None
        if self.result is None:
            raise CopilotError("There is no completed analysis to chat about yet")

        self.turns.append(ChatTurn(role="user", content=message))
        if self.subflow.active and await self._offer_to_subflow(message):
            return None
        return await self._exchange(message)

    async def start_guided(self) -> bool:
        """Begin the fee and profit subflow for the current selection."""
        return await self._guarded(self.subflow.begin, self.selection.ids, self.result)

    async def accept_fee_fallback(self) -> bool:
        return await self._guarded(self.subflow.accept_fallback)

    async def retry_fee_lookup(self, price: float | None = None) -> bool:
        return await self._guarded(self.subflow.retry_at, price)

    async def _offer_to_subflow(self, message: str) -> bool:
        return await self._guarded(self.subflow.handle_turn, message, check_idle=False)

    async def _guarded(self, action, *args, check_idle: bool = True) -> bool:
        # Subflow messages produced meanwhile are queued like streamed ones.
        if check_idle and self.state is not ChatState.IDLE:
            raise TurnInFlightError(f"Chat turn already {self.state.value}")
        self.state = ChatState.AWAITING_RESPONSE
        epoch = self._epoch
        try:
            return await action(*args)
        finally:
            self._settle(epoch)

    async def confirm_escalation(self) -> ChatTurn | None:
        """Re-send the original question once with the confirmation flag."""
        if self.state is not ChatState.PENDING_CONFIRMATION:
            raise CopilotError("No lookup is waiting for confirmation")
        request = self.gate.confirm()
        self.state = ChatState.IDLE
        logger.info(f"Escalation confirmed for {sorted(request.target_ids)}")
        return await self._exchange(request.original_question, escalation=request)

    def cancel_escalation(self) -> None:
        if self.state is not ChatState.PENDING_CONFIRMATION:
            return
        self.gate.cancel()
        self.status_text = None
        self.state = ChatState.IDLE
        self._flush_deferred()

    async def _exchange(self, message: str, escalation: EscalationRequest | None = None) -> ChatTurn | None:
        epoch = self._epoch
        run_id = self.result.run_id
        self.state = ChatState.AWAITING_RESPONSE
        self.status_text = None
        content: list[str] = []
        citations: list[Citation] = []
        guided = False
        answer: ChatTurn | None = None

        try:
            async with self.client.open_chat(
                run_id,
                message,
                sorted(self.selection.ids),
                escalation_confirmed=escalation is not None,
                escalation_target_ids=sorted(escalation.target_ids) if escalation else None,
            ) as response:
                if response.status_code >= 400:
                    data = await read_json(response)
                    raise ChatFailed(data.get("error") or f"Chat request failed ({response.status_code})")

                decoder = EventStreamDecoder()
                chunks = response.aiter_bytes().__aiter__()
                while not decoder.done:
                    try:
                        chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.stall_timeout)
                    except StopAsyncIteration:
                        break
                    if epoch != self._epoch:
                        logger.debug("Dropping chat stream for a reset conversation")
                        return None
                    self.state = ChatState.STREAMING_RESPONSE
                    for event in decoder.feed(chunk):
                        outcome = self._apply_event(event, message, content, citations)
                        if outcome == "escalate":
                            # The rest of this stream is not shown.
                            return None
                        guided = guided or outcome == "guided"
                for event in decoder.close():
                    self._apply_event(event, message, content, citations)

            # Closing the response can yield; a new run may have reset us meanwhile.
            if epoch != self._epoch:
                logger.debug("Dropping chat answer for a reset conversation")
                return None
            if content or citations:
                answer = ChatTurn(role="assistant", content="".join(content), citations=citations or None)
                self.turns.append(answer)
            if guided:
                await self.subflow.begin(self.selection.ids, self.result)
            return answer
        except asyncio.TimeoutError:
            if epoch == self._epoch:
                logger.warning(f"Chat stream stalled for {self.stall_timeout:g}s; giving up on the turn")
                self._error_turn(f"No response for {self.stall_timeout:g} seconds")
            return None
        except (httpx.HTTPError, CopilotError) as e:
            if epoch == self._epoch:
                logger.warning(f"Chat turn failed: {e}")
                self._error_turn(str(e))
            return None
        finally:
            self._settle(epoch)

    def _apply_event(self, event: dict[str, Any], question: str, content: list[str], citations: list[Citation]) -> str | None:
        if "error" in event:
            raise ChatFailed(str(event["error"]))

        metadata = event.get("metadata")
        if isinstance(metadata, dict):
            kind = metadata.get("type")
            if kind == "citations":
                citations.extend(Citation.from_json(c) for c in metadata.get("citations") or [] if isinstance(c, dict))
            elif kind == "escalation_message":
                self.status_text = metadata.get("message")
            elif kind == "escalation_confirmation_required":
                self.gate.request(
                    message=str(metadata.get("message") or "This answer needs a live lookup."),
                    target_ids=metadata.get("targetIds") or [],
                    credit_cost=float(metadata.get("creditCost") or 0),
                    original_question=question,
                )
                self.state = ChatState.PENDING_CONFIRMATION
                self.status_text = self.gate.describe()
                return "escalate"
            elif kind == "guided_intent_detected":
                return "guided"
            elif kind == "cost_override_applied":
                snapshot = metadata.get("margin_snapshot")
                if isinstance(snapshot, dict):
                    self.margin_snapshot = snapshot
            else:
                logger.debug(f"Ignoring chat metadata of type {kind!r}")
            return None

        text = event.get("content")
        if isinstance(text, str):
            content.append(text)
        return None

    def _error_turn(self, reason: str) -> None:
        self.turns.append(ChatTurn(role="assistant", content=f"Error: {reason}. Please try again."))

    def _settle(self, epoch: int) -> None:
        if epoch != self._epoch:
            return
        if self.state is not ChatState.PENDING_CONFIRMATION:
            self.state = ChatState.IDLE
        self._flush_deferred()
