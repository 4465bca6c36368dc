"""
PatternCast — Vision Gateway Engine

Sends chart screenshots to Gemini via langchain-google-genai and turns the
free-text answer into a ChartObservation.

The model does not always honour the JSON contract, so every answer goes
through three stages:
  1. strict JSON (markdown fences stripped, outermost braces extracted)
  2. per-field regex extraction
  3. neutral defaults

Transport failures (rate limit, quota, auth, network, open circuit) raise
UpstreamUnavailableError; an unusable answer never does.
"""

from __future__ import annotations

import base64
import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from langchain_core.messages import HumanMessage, SystemMessage

from patterncast.config import get_settings
from patterncast.exceptions import UpstreamUnavailableError
from patterncast.models import (
    ChartObservation,
    Direction,
    EnsembleVote,
    KeyLevel,
    PriceLevel,
    normalize_confidence,
)
from patterncast.utils.circuit_breaker import CircuitOpenError, get_breaker

log = structlog.get_logger(__name__)

SERVICE_NAME = "vision_gateway"

AI_METHOD = "ai_analysis"
AI_UNAVAILABLE = "AI analysis unavailable"

DESCRIBE_PROMPT = """You are an expert trading analyst. Analyze this {perspective}chart.

Return JSON only, no markdown:
{{
  "chart_date": "YYYY-MM-DD",
  "day_of_week": "monday/tuesday/wednesday/thursday/friday",
  "sentiment_label": "bullish/bearish/neutral",
  "price_direction": "bullish/bearish/neutral",
  "momentum": "strong/moderate/weak",
  "volatility": "high/medium/low",
  "volume_profile": "high/normal/low",
  "session_type": "pre-market/market-open/lunch/power-hour/after-hours",
  "pattern_type": "breakout/breakdown/reversal/continuation/consolidation",
  "confidence_score": 0.85,
  "key_levels": [{{"type": "support/resistance", "price": 16000.00, "strength": 0.9}}],
  "support_levels": [{{"price": 15950.00, "strength": 0.8, "touches": 3}}],
  "resistance_levels": [{{"price": 16050.00, "strength": 0.9, "touches": 2}}],
  "price_range": {{"high": 16100, "low": 15900, "current": 16000}},
  "near_support": false,
  "near_resistance": false,
  "extended": false
}}

Look for support/resistance zones, order blocks, liquidity pools and
market structure (higher highs/lows or lower highs/lows)."""

PREDICT_PROMPT = """You are a futures trading expert. Predict the price direction
for the next {timeframe} minutes. Return JSON only:
{{
  "prediction": {{
    "price_direction": "bullish/bearish/neutral",
    "confidence_score": 0.75,
    "reasoning": "short explanation"
  }}
}}
Consider support/resistance proximity."""

# Fields the regex fallback knows how to pull out of a broken answer.
_STRING_FIELDS = (
    "chart_date",
    "day_of_week",
    "sentiment_label",
    "price_direction",
    "momentum",
    "volatility",
    "volume_profile",
    "session_type",
    "pattern_type",
)
_BOOL_FIELDS = ("near_support", "near_resistance", "extended")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r'"confidence(?:_score)?"\s*:\s*"?(-?\d+(?:\.\d+)?)')
_CURRENT_PRICE_RE = re.compile(r'"current(?:_price)?"\s*:\s*"?(\d+(?:\.\d+)?)')
_REASONING_RE = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)"')

_RATE_LIMIT_MARKERS = ("429", "rate", "resource_exhausted", "resource exhausted")
_QUOTA_MARKERS = ("quota",)
_AUTH_MARKERS = ("api_key", "api key", "401", "403", "permission", "unauthenticated")
_TIMEOUT_MARKERS = ("timeout", "timed out", "deadline")


# ──────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────

def parse_json(text: str) -> Optional[dict]:
    """Strict parse of a model answer; ``None`` when it is not a JSON object."""
    if not text or not text.strip():
        return None
    cleaned = text.strip()
    fenced = _FENCE_RE.search(cleaned)
    if fenced:
        cleaned = fenced.group(1)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def extract_fields(text: str) -> dict:
    """Best-effort regex extraction, one independent pattern per field."""
    if not text:
        return {}
    found: dict[str, Any] = {}
    for name in _STRING_FIELDS:
        match = re.search(rf'"{name}"\s*:\s*"([^"]+)"', text)
        if match:
            found[name] = match.group(1)
    for name in _BOOL_FIELDS:
        match = re.search(rf'"{name}"\s*:\s*(true|false)', text, re.IGNORECASE)
        if match:
            found[name] = match.group(1).lower() == "true"
    match = _CONFIDENCE_RE.search(text)
    if match:
        found["confidence_score"] = float(match.group(1))
    match = _CURRENT_PRICE_RE.search(text)
    if match:
        found["current_price"] = float(match.group(1))
    return found


def _levels(raw: Any, model: type[PriceLevel]) -> list:
    """Keep only the level entries that carry a usable price."""
    levels = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            levels.append(model.model_validate(item))
        except ValidationError:
            continue
    return levels


def _response_text(content: Any) -> str:
    """LangChain may return a string or a list of content parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


def neutral_observation(filename: Optional[str] = None, **overrides) -> ChartObservation:
    """The "no signal" observation used when the answer is unusable."""
    now = datetime.now(timezone.utc)
    data = {
        "filename": filename,
        "chart_date": now.date().isoformat(),
        "day_of_week": now.strftime("%A").lower(),
        "sentiment_label": "neutral",
        "price_direction": "neutral",
        "momentum": "moderate",
        "volatility": "medium",
        "volume_profile": "normal",
        "session_type": "market-open",
        "pattern_type": "consolidation",
        "confidence_score": 0.5,
        "current_price": get_settings().default_price,
    }
    defaults = dict(data)
    pending = {k for k, v in overrides.items() if v is not None}
    data.update({k: overrides[k] for k in pending})
    while True:
        try:
            return ChartObservation.model_validate(data)
        except ValidationError as exc:
            rejected = {err["loc"][0] for err in exc.errors() if err.get("loc")} & pending
            if not rejected:
                log.warning("vision.override_rejected", fields=sorted(pending))
                return ChartObservation.model_validate(defaults)
            log.warning("vision.field_rejected", fields=sorted(rejected))
            pending -= rejected
            for key in rejected:
                if key in defaults:
                    data[key] = defaults[key]
                else:
                    data.pop(key, None)


def build_observation(text: str, filename: Optional[str] = None) -> ChartObservation:
    """Turn a raw model answer into an observation, never raising."""
    data = parse_json(text)
    if data is None or "error" in data:
        extracted = extract_fields(text)
        if extracted:
            log.info("vision.regex_fallback", fields=sorted(extracted))
            extracted.setdefault("confidence_score", 0.6)
        else:
            log.warning("vision.unusable_response", preview=(text or "")[:120])
        return neutral_observation(filename, **extracted)

    price_range = data.get("price_range") if isinstance(data.get("price_range"), dict) else {}
    current = data.get("current_price") or price_range.get("current")
    if not data.get("sentiment_label") and data.get("price_direction"):
        data["sentiment_label"] = data["price_direction"]
    if not data.get("price_direction") and data.get("sentiment_label"):
        data["price_direction"] = data["sentiment_label"]

    fields = {k: data.get(k) for k in _STRING_FIELDS + _BOOL_FIELDS}
    fields["confidence_score"] = data.get("confidence_score")
    if isinstance(current, (int, float)) and current > 0:
        fields["current_price"] = float(current)

    observation = neutral_observation(filename, **fields)
    return observation.model_copy(update={
        "key_levels": _levels(data.get("key_levels"), KeyLevel),
        "support_levels": _levels(data.get("support_levels"), PriceLevel),
        "resistance_levels": _levels(data.get("resistance_levels"), PriceLevel),
    })


def parse_vote(text: str) -> EnsembleVote:
    """Read the model's direction/confidence/reasoning triple."""
    data = parse_json(text)
    if data is not None:
        body = data.get("prediction") if isinstance(data.get("prediction"), dict) else data
        direction = body.get("price_direction") or body.get("direction")
        confidence = body.get("confidence_score", body.get("confidence"))
        reasoning = body.get("reasoning") or "AI-based prediction"
    else:
        extracted = extract_fields(text)
        direction = extracted.get("price_direction")
        confidence = extracted.get("confidence_score")
        match = _REASONING_RE.search(text or "")
        reasoning = match.group(1) if match else "AI-based prediction"

    if not direction:
        return EnsembleVote(method=AI_METHOD, confidence=0.5, reasoning=AI_UNAVAILABLE)
    label = str(direction).strip().lower()
    if label not in {d.value for d in Direction}:
        label = Direction.NEUTRAL.value
    return EnsembleVote(
        method=AI_METHOD,
        direction=Direction(label),
        confidence=normalize_confidence(confidence),
        reasoning=str(reasoning),
    )


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class VisionEngine:
    """Gemini chart description and direction vote.

    Both public methods are synchronous; async callers run them through
    ``asyncio.to_thread``.
    """

    def __init__(self):
        self._llm = None
        settings = get_settings()
        self._breaker = get_breaker(
            SERVICE_NAME,
            failure_threshold=settings.vision_breaker_threshold,
            recovery_timeout=settings.vision_breaker_recovery_seconds,
        )

    def _get_llm(self):
        """Lazy-init LLM to avoid import-time API calls."""
        if self._llm is None:
            from langchain_google_genai import ChatGoogleGenerativeAI
            settings = get_settings()
            self._llm = ChatGoogleGenerativeAI(
                model=settings.vision_model,
                google_api_key=settings.google_api_key,
                temperature=settings.vision_temperature,
                max_output_tokens=settings.vision_max_output_tokens,
                timeout=settings.vision_timeout_seconds,
                max_retries=0,
            )
        return self._llm

    @staticmethod
    def _image_message(image_bytes: bytes, mime_type: str = "image/png") -> dict:
        """Create an inline image part for Gemini Vision."""
        b64 = base64.b64encode(image_bytes).decode("utf-8")
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{mime_type};base64,{b64}"},
        }

    @staticmethod
    def _classify(exc: BaseException) -> str:
        error_str = str(exc).lower()
        if any(m in error_str for m in _QUOTA_MARKERS):
            return "quota"
        if any(m in error_str for m in _RATE_LIMIT_MARKERS):
            return "rate_limit"
        if any(m in error_str for m in _AUTH_MARKERS):
            return "auth_failure"
        if isinstance(exc, TimeoutError) or any(m in error_str for m in _TIMEOUT_MARKERS):
            return "timeout"
        if isinstance(exc, ConnectionError):
            return "connection"
        return "api_error"

    def _invoke(self, messages: list) -> str:
        """Call Gemini through the breaker and return the answer text.

        Raises:
            UpstreamUnavailableError: the gateway could not produce an answer.
        """
        try:
            llm = self._get_llm()
            response = self._breaker.call(lambda: llm.invoke(messages))
        except CircuitOpenError as exc:
            log.warning("vision.circuit_open", retry_after=round(exc.retry_after, 1))
            raise UpstreamUnavailableError(SERVICE_NAME, "circuit_open", exc.retry_after) from exc
        except Exception as exc:
            reason = self._classify(exc)
            log.error("vision.gateway_error", reason=reason, error=str(exc)[:200])
            retry_after = 60.0 if reason in ("rate_limit", "quota") else None
            raise UpstreamUnavailableError(SERVICE_NAME, reason, retry_after) from exc
        return _response_text(getattr(response, "content", response))

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def describe_chart(
        self,
        image_bytes: bytes,
        filename: Optional[str] = None,
        timeframe: Optional[str] = None,
        mime_type: str = "image/png",
    ) -> ChartObservation:
        """Categorical description of one chart screenshot.

        ``timeframe`` (e.g. "5min") asks the model to read the chart from
        that perspective.
        """
        perspective = f"{timeframe} " if timeframe else ""
        prompt = DESCRIBE_PROMPT.format(perspective=perspective)
        message = HumanMessage(content=[
            {"type": "text", "text": prompt},
            self._image_message(image_bytes, mime_type),
        ])
        raw = self._invoke([message])
        observation = build_observation(raw, filename)
        log.info(
            "vision.described",
            timeframe=timeframe,
            direction=observation.price_direction,
            confidence=observation.confidence_score,
        )
        return observation

    def predict_direction(self, current: dict, similar: list[dict]) -> EnsembleVote:
        """Ask the model for a direction vote given the current chart and its history."""
        settings = get_settings()
        messages = [
            SystemMessage(content=PREDICT_PROMPT.format(
                timeframe=settings.prediction_timeframe_minutes,
            )),
            HumanMessage(content=(
                f"CURRENT: {json.dumps(current, indent=2, default=str)}\n\n"
                f"TOP SIMILAR PATTERNS: {json.dumps(similar[:10], indent=2, default=str)}\n\n"
                "Predict the direction."
            )),
        ]
        vote = parse_vote(self._invoke(messages))
        log.info("vision.vote", direction=vote.direction.value, confidence=vote.confidence)
        return vote


# ── Singleton ──

_engine: Optional[VisionEngine] = None


def get_vision_engine() -> VisionEngine:
    global _engine
    if _engine is None:
        _engine = VisionEngine()
    return _engine
