"""LLM signal output schema and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from signal_trader.schemas import MarketSample, TradingSignal, utcnow


class LLMSignal(BaseModel):
    """Strict shape of the model's answer. Unknown keys are rejected."""

    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )

    action: Literal["buy", "sell", "hold"]
    confidence: float = Field(ge=0.0, le=1.0)
    target_price: float = Field(gt=0)
    stop_loss: float | None = Field(default=None, ge=0)
    reasoning: str = ""


def hold_signal(sample: MarketSample, reason: str) -> TradingSignal:
    """Conservative zero-confidence hold for unusable model output."""
    return TradingSignal(
        symbol=sample.symbol,
        action="hold",
        confidence=0.0,
        target_price=sample.price,
        reasoning=reason,
        timestamp=utcnow(),
    )


def parse_signal_payload(payload: dict[str, Any], sample: MarketSample) -> TradingSignal:
    """Validate a decoded answer. Any violation becomes a hold."""
    try:
        parsed = LLMSignal.model_validate(payload)
    except ValidationError as exc:
        return hold_signal(sample, f"schema_validation_error: {exc.errors()[0]['msg']}")
    return TradingSignal(
        symbol=sample.symbol,
        action=parsed.action,
        confidence=parsed.confidence,
        target_price=parsed.target_price,
        stop_loss=parsed.stop_loss,
        reasoning=parsed.reasoning,
        timestamp=utcnow(),
    )


def parse_signal_text(text: str, sample: MarketSample) -> TradingSignal:
    """Parse raw model text. Non-JSON output is a hold."""
    try:
        payload = _extract_json_obj(text)
    except ValueError as exc:
        return hold_signal(sample, str(exc))
    return parse_signal_payload(payload, sample)


def build_market_prompt(sample: MarketSample) -> str:
    """User prompt describing one sample."""
    snapshot = sample.model_dump(mode="json", by_alias=True, exclude_none=True)
    return (
        "Analyze this market sample and answer with one trading signal. "
        f"Sample: {json.dumps(snapshot, sort_keys=True)}"
    )


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    candidates = []
    if stripped.startswith("{") and stripped.endswith("}"):
        candidates.append(stripped)
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1))
    braces = re.search(r"\{.*\}", stripped, re.DOTALL)
    if braces:
        candidates.append(braces.group(0))
    if not candidates:
        raise ValueError("model_response_not_json")

    try:
        decoded = json.loads(candidates[0])
    except json.JSONDecodeError as exc:
        raise ValueError(f"model_response_invalid_json: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise ValueError("model_response_json_not_object")
    return decoded
