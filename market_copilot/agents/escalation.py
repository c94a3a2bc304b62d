"""Confirmation checkpoint for cost-bearing chat lookups."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable

from market_copilot.data.schema import EscalationRequest
from market_copilot.errors import CopilotError

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    NONE = "none"
    PENDING_CONFIRMATION = "pending_confirmation"


class EscalationGate:
    """Holds at most one pending escalation.

    The gate never performs the lookup itself. ``confirm`` hands the request
    back to the caller, which re-sends the original question once with the
    confirmation flag; ``cancel`` simply forgets it.
    """

    def __init__(self) -> None:
        self.pending: EscalationRequest | None = None

    @property
    def state(self) -> GateState:
        return GateState.PENDING_CONFIRMATION if self.pending is not None else GateState.NONE

    def request(
        self,
        message: str,
        target_ids: Iterable[str],
        credit_cost: float,
        original_question: str,
    ) -> EscalationRequest:
        if self.pending is not None:
            logger.info("Replacing unanswered escalation request")
        self.pending = EscalationRequest(
            message=message,
            target_ids=frozenset(target_ids),
            credit_cost=credit_cost,
            original_question=original_question,
        )
        logger.info(f"Escalation pending: {sorted(self.pending.target_ids)} for {credit_cost} credit(s)")
        return self.pending

    def confirm(self) -> EscalationRequest:
        request = self._take()
        request.decision = "confirmed"
        return request

    def cancel(self) -> EscalationRequest:
        request = self._take()
        request.decision = "cancelled"
        logger.info("Escalation cancelled; no lookup made")
        return request

    def _take(self) -> EscalationRequest:
        if self.pending is None:
            raise CopilotError("No escalation is pending confirmation")
        request, self.pending = self.pending, None
        return request

    def reset(self) -> None:
        self.pending = None

    def describe(self) -> str:
        """Confirmation prompt text: exact ids and credit cost."""
        if self.pending is None:
            return ""
        ids = ", ".join(sorted(self.pending.target_ids)) or "the selected products"
        cost = self.pending.credit_cost
        credits = "1 credit" if cost == 1 else f"{cost:g} credits"
        return f"{self.pending.message} Look up {ids} for {credits}?"
