"""Request and reply bodies of the backend endpoints."""

from __future__ import annotations

import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AnalyzeRequest(BaseModel):
    input_type: Literal["keyword"] = "keyword"
    input_value: str = Field(..., min_length=1, max_length=200)

    @field_validator("input_value")
    @classmethod
    def normalize_keyword(cls, v: str) -> str:
        v = re.sub(r"\s+", " ", v.strip())
        if not v:
            raise ValueError("Keyword must not be blank")
        return v


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId", min_length=1)
    message: str = Field(..., min_length=1, max_length=2000)
    selected_ids: list[str] = Field(default_factory=list, alias="selectedIds")
    escalation_confirmed: bool = Field(False, alias="escalationConfirmed")
    escalation_target_ids: list[str] = Field(default_factory=list, alias="escalationTargetIds")


class FeeQuoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: str = Field(..., alias="itemId", min_length=1)
    price: float = Field(..., gt=0)


class FeeEstimate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: Literal["exact", "estimated"] = "estimated"
    referral_fee: float = Field(0.0, alias="referralFee", ge=0)
    fulfillment_fee: float = Field(0.0, alias="fulfillmentFee", ge=0)
    total_fees: Optional[float] = Field(None, alias="totalFees", ge=0)
    confidence: Optional[str | float] = None


class FeeQuoteReply(FeeEstimate):
    """``{ok: true, ...fees}`` on success, ``{ok: false, reason, fallback?}`` otherwise."""

    ok: bool
    reason: Optional[str] = None
    fallback: Optional[FeeEstimate] = None

    def to_wire(self) -> dict:
        if not self.ok:
            body: dict = {"ok": False, "reason": self.reason or "Fee lookup failed"}
            if self.fallback is not None:
                body["fallback"] = self.fallback.model_dump(by_alias=True, exclude_none=True)
            return body
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"reason", "fallback"})
