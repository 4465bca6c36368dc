"""
PatternCast — Pydantic Models

All I/O schemas for the application. Engines return these, the record store
persists their ``to_record()`` shape, API routes serialize these.

Confidence values are on a 0-1 scale everywhere in this module.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Direction(str, Enum):
    """Primary trend label."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Regime(str, Enum):
    """Discretised trend state."""
    STRONG_BULL = "strong_bull"
    WEAK_BULL = "weak_bull"
    NEUTRAL = "neutral"
    WEAK_BEAR = "weak_bear"
    STRONG_BEAR = "strong_bear"


class VolatilityRegime(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class VolumeRegime(str, Enum):
    ABOVE_AVERAGE = "above_average"
    AVERAGE = "average"
    BELOW_AVERAGE = "below_average"


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    WAIT = "wait"


class PositionSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def normalize_confidence(value: Any, default: float = 0.5) -> float:
    """Coerce a confidence to the 0-1 scale.

    The vision gateway reports either 0-1 or 0-100 depending on the prompt;
    anything above 1 is treated as a percentage.
    """
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return default
    if conf != conf:  # NaN
        return default
    if conf > 1.0:
        conf /= 100.0
    return max(0.0, min(1.0, conf))


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _weekday() -> str:
    return datetime.now(timezone.utc).strftime("%A").lower()


# ──────────────────────────────────────────────
# Chart Observation
# ──────────────────────────────────────────────

class PriceLevel(BaseModel):
    """Support or resistance price as reported by the vision model."""
    price: float
    strength: float = 0.5
    touches: Optional[int] = None


class KeyLevel(PriceLevel):
    """Key level tagged with its kind."""
    type: str = Field("support", description="support or resistance")


class MACD(BaseModel):
    value: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class TechnicalIndicators(BaseModel):
    """Pseudo-indicators synthesised from categorical chart labels."""
    rsi: float = Field(50.0, ge=0, le=100)
    atr: float = Field(0.0, ge=0)
    macd: MACD = Field(default_factory=MACD)
    volume_vs_average: float = 1.0
    distance_from_vwap: float = 0.0


class MarketRegime(BaseModel):
    regime: Regime = Regime.NEUTRAL
    volatility: VolatilityRegime = VolatilityRegime.NORMAL
    volume: VolumeRegime = VolumeRegime.AVERAGE
    confidence: float = 0.75


class TimeframeAlignment(BaseModel):
    tf_5min: str = "neutral"
    tf_15min: str = "neutral"
    tf_60min: str = "neutral"
    alignment_score: float = 0.0
    all_aligned: bool = False


class ChartObservation(BaseModel):
    """A categorical description of one chart, current or historical."""

    id: Optional[str] = None
    filename: Optional[str] = None
    chart_date: str = Field(default_factory=_today)
    day_of_week: str = Field(default_factory=_weekday)
    sentiment_label: str = "neutral"
    price_direction: str = "neutral"
    momentum: str = "moderate"
    volatility: str = "medium"
    volume_profile: str = "normal"
    session_type: str = "market-open"
    pattern_type: str = "consolidation"
    confidence_score: float = 0.5
    key_levels: list[KeyLevel] = Field(default_factory=list)
    support_levels: list[PriceLevel] = Field(default_factory=list)
    resistance_levels: list[PriceLevel] = Field(default_factory=list)
    current_price: float = 16000.0
    near_support: bool = False
    near_resistance: bool = False
    extended: bool = False
    actual_outcome: Optional[str] = None

    # ── Derived (filled by the indicator / regime engines) ──
    rsi_value: Optional[float] = None
    atr_value: Optional[float] = None
    macd: Optional[MACD] = None
    volume_vs_average: Optional[float] = None
    distance_from_vwap: Optional[float] = None
    market_regime: Optional[Regime] = None
    volatility_regime: Optional[VolatilityRegime] = None
    volume_regime: Optional[VolumeRegime] = None
    timeframe_alignment: Optional[TimeframeAlignment] = None

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _scale_confidence(cls, v):
        return normalize_confidence(v)

    @field_validator(
        "day_of_week", "sentiment_label", "price_direction", "momentum",
        "volatility", "volume_profile", "session_type",
        mode="before",
    )
    @classmethod
    def _lower_label(cls, v):
        return str(v).strip().lower() if v is not None else v

    def enrich(
        self,
        indicators: TechnicalIndicators,
        regime: MarketRegime,
    ) -> "ChartObservation":
        """Return a copy carrying the synthesised indicators and regime."""
        return self.model_copy(update={
            "rsi_value": indicators.rsi,
            "atr_value": indicators.atr,
            "macd": indicators.macd,
            "volume_vs_average": indicators.volume_vs_average,
            "distance_from_vwap": indicators.distance_from_vwap,
            "market_regime": regime.regime,
            "volatility_regime": regime.volatility,
            "volume_regime": regime.volume,
        })

    def resistances(self) -> list[float]:
        levels = [lvl.price for lvl in self.resistance_levels]
        levels += [k.price for k in self.key_levels if k.type.lower() == "resistance"]
        return levels

    def supports(self) -> list[float]:
        levels = [lvl.price for lvl in self.support_levels]
        levels += [k.price for k in self.key_levels if k.type.lower() == "support"]
        return levels

    def to_record(self) -> dict:
        """Flatten into the persisted ``chart_analyses`` shape.

        Categorical features are written both flat and under the nested
        ``pattern_features`` / ``temporal_patterns`` keys that older records
        only carry, so similarity scoring sees one shape.
        """
        record = self.model_dump(mode="json", exclude_none=True, exclude={"macd"})
        if self.macd is not None:
            record["macd_value"] = self.macd.value
            record["macd_signal"] = self.macd.signal
            record["macd_histogram"] = self.macd.histogram
        record["pattern_features"] = {
            "trend_direction": self.price_direction,
            "volume_profile": self.volume_profile,
            "volatility": self.volatility,
            "momentum": self.momentum,
        }
        record["temporal_patterns"] = {"session_type": self.session_type}
        record["session_details"] = {"session_type": self.session_type}
        return record


# ──────────────────────────────────────────────
# Ensemble Prediction
# ──────────────────────────────────────────────

class EnsembleVote(BaseModel):
    """One independent directional opinion."""
    method: str
    direction: Direction = Direction.NEUTRAL
    confidence: float = 0.5
    reasoning: str = ""


class PredictedMove(BaseModel):
    direction: str = "sideways"  # up / down / sideways
    magnitude: str = "small"
    target_levels: list[float] = Field(default_factory=list)
    timeframe: str = "30min"


class SimilarPattern(BaseModel):
    id: Optional[str] = None
    date: Optional[str] = None
    similarity_score: float
    outcome: str
    reasoning: str


class TradingRecommendation(BaseModel):
    action: TradeAction = TradeAction.WAIT
    entry_level: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    position_size: PositionSize = PositionSize.SMALL


class QualityMetrics(BaseModel):
    meets_confidence_threshold: bool = False
    has_enough_patterns: bool = False
    has_consensus: bool = False
    overall_quality: str = "MEDIUM"


class Prediction(BaseModel):
    price_direction: Direction = Direction.NEUTRAL
    confidence_score: float = 0.5
    consensus_count: int = 0
    ensemble_agreement: str = "0/4 methods agree"
    predicted_move: PredictedMove = Field(default_factory=PredictedMove)
    similar_patterns: list[SimilarPattern] = Field(default_factory=list)
    ensemble_breakdown: list[EnsembleVote] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    trading_recommendation: TradingRecommendation = Field(default_factory=TradingRecommendation)
    reasoning: str = ""
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)


class PredictionResult(BaseModel):
    """Full response of the ensemble predictor."""
    current_analysis: dict
    prediction: Prediction
    historical_patterns_count: int = 0
    similar_patterns_count: int = 0


class PredictionFeedback(BaseModel):
    """Snapshot persisted after every prediction for later evaluation."""
    predicted_direction: Direction
    predicted_price_target: Optional[float] = None
    predicted_timeframe_minutes: int = 30
    confidence_score: float
    conditions: dict = Field(default_factory=dict)
    pattern_type: str = "unknown"
    similar_patterns_used: int = 0
    ensemble_agreement_score: float = 0.0


# ──────────────────────────────────────────────
# Multi-Timeframe Analysis
# ──────────────────────────────────────────────

class AnalysisResult(BaseModel):
    """Enriched primary observation plus the per-timeframe descriptions."""
    analysis: ChartObservation
    technical_indicators: TechnicalIndicators
    market_regime: MarketRegime
    timeframe_alignment: TimeframeAlignment
    timeframe_analyses: dict[str, ChartObservation] = Field(default_factory=dict)
    stored: bool = False


# ──────────────────────────────────────────────
# API Requests
# ──────────────────────────────────────────────

class ChartUploadRequest(BaseModel):
    """Base64-encoded chart screenshot."""
    image: str = Field(..., min_length=1, description="Base64 PNG/JPEG bytes")
    filename: str = Field("chart.png", max_length=255)
    mime_type: str = Field("image/png", pattern=r"^image/(png|jpeg|jpg|webp)$")


class SimilarityRequest(BaseModel):
    source_id: str = Field(..., min_length=1)
    target_ids: list[str] = Field(..., min_length=1, max_length=500)
    limit: int = Field(5, ge=1, le=50)


class OutcomeRequest(BaseModel):
    """Validated outcome for a stored analysis."""
    chart_analysis_id: str = Field(..., min_length=1)
    actual_direction: Direction
    predicted_direction: Optional[Direction] = None
    confidence_score: Optional[float] = None
    price_target: Optional[float] = None
    actual_price: Optional[float] = None
    time_horizon_hours: Optional[float] = None
    notes: Optional[str] = Field(None, max_length=2000)


class HealthCheck(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str = "1.0.0"
    environment: str = "development"
    uptime_seconds: float = 0.0
    services: dict = {}
