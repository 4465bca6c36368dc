"""
PatternCast — Ensemble Predictor

Four independent directional votes, reconciled by majority:

  A. pattern_matching — outcomes of the most similar historical charts
  B. day_of_week      — outcomes of charts recorded on the same weekday
  C. technical        — rule table on the synthesised RSI / MACD
  D. ai_analysis      — the vision model asked directly, bounded by a timeout

A directional recommendation is only issued when the (proximity-penalised)
confidence, the number of similar patterns and the vote consensus all clear
their gates; otherwise the action is "wait".
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from patterncast.config import get_settings
from patterncast.db.chart_repository import ChartRepository
from patterncast.engines import indicator_engine, regime_engine
from patterncast.engines.similarity_engine import rank_similar
from patterncast.engines.vision_engine import AI_METHOD, AI_UNAVAILABLE, VisionEngine, get_vision_engine
from patterncast.models import (
    ChartObservation,
    Direction,
    EnsembleVote,
    PositionSize,
    PredictedMove,
    Prediction,
    PredictionFeedback,
    PredictionResult,
    QualityMetrics,
    SimilarPattern,
    TradeAction,
    TradingRecommendation,
    VolatilityRegime,
)
from patterncast.observability import trace_span

log = structlog.get_logger(__name__)

# ── Vote thresholds ──
MIN_PATTERN_VOTES = 5
PATTERN_MAJORITY = 0.65
MIN_DAY_VOTES = 10
DAY_MAJORITY = 0.60
TECHNICAL_BASELINE = 0.6
REVERSAL_CONFIDENCE = 0.65
TECHNICAL_CAP = 0.85
AI_CONTEXT_PATTERNS = 10

# ── Reconciliation / gates ──
CONSENSUS_REQUIRED = 3
VOTE_COUNT = 4
CONFIDENCE_GATE = 0.70
MIN_SIMILAR_FOR_TRADE = 10
IDEAL_CONFIDENCE = 0.75
PROXIMITY_PENALTY = 0.7
STOP_ATR_MULTIPLE = 1.5
MEDIUM_SIZE_CONFIDENCE = 0.80
NEUTRAL_CONFIDENCE = 0.5


# ──────────────────────────────────────────────
# Votes
# ──────────────────────────────────────────────

def record_outcome(record: dict) -> str:
    """Historical direction of a record: validated outcome, else its label."""
    return str(record.get("actual_outcome") or record.get("price_direction") or "").lower()


def _majority_vote(
    method: str,
    records: list[dict],
    majority: float,
    label: str,
) -> EnsembleVote:
    bullish = sum(1 for r in records if record_outcome(r) == Direction.BULLISH.value)
    bearish = sum(1 for r in records if record_outcome(r) == Direction.BEARISH.value)
    decided = bullish + bearish
    if decided:
        bull_rate, bear_rate = bullish / decided, bearish / decided
        if bull_rate > majority:
            return EnsembleVote(
                method=method,
                direction=Direction.BULLISH,
                confidence=bull_rate,
                reasoning=f"{bullish}/{decided} {label} were bullish",
            )
        if bear_rate > majority:
            return EnsembleVote(
                method=method,
                direction=Direction.BEARISH,
                confidence=bear_rate,
                reasoning=f"{bearish}/{decided} {label} were bearish",
            )
    return EnsembleVote(
        method=method,
        confidence=NEUTRAL_CONFIDENCE,
        reasoning=f"No clear majority across {len(records)} {label}",
    )


def pattern_vote(similar: list[dict]) -> EnsembleVote:
    if len(similar) < MIN_PATTERN_VOTES:
        return EnsembleVote(
            method="pattern_matching",
            confidence=0.0,
            reasoning="Insufficient similar patterns",
        )
    return _majority_vote("pattern_matching", similar, PATTERN_MAJORITY, "similar patterns")


def day_of_week_vote(records: list[dict]) -> EnsembleVote:
    if len(records) < MIN_DAY_VOTES:
        return EnsembleVote(
            method="day_of_week",
            confidence=NEUTRAL_CONFIDENCE,
            reasoning="Insufficient temporal data",
        )
    return _majority_vote("day_of_week", records, DAY_MAJORITY, "same-weekday charts")


def technical_vote(rsi: float, macd_value: float) -> EnsembleVote:
    method = "technical"
    if rsi > 65 and macd_value > 10:
        return EnsembleVote(
            method=method,
            direction=Direction.BULLISH,
            confidence=min(TECHNICAL_CAP, rsi / 100 + 0.5),
            reasoning=f"Strong momentum: RSI {rsi:.0f}, MACD {macd_value:.1f}",
        )
    if rsi < 35 and macd_value < -10:
        return EnsembleVote(
            method=method,
            direction=Direction.BEARISH,
            confidence=min(TECHNICAL_CAP, (100 - rsi) / 100 + 0.5),
            reasoning=f"Weak momentum: RSI {rsi:.0f}, MACD {macd_value:.1f}",
        )
    if rsi > 70:
        return EnsembleVote(
            method=method,
            direction=Direction.BEARISH,
            confidence=REVERSAL_CONFIDENCE,
            reasoning="Overbought, reversal risk",
        )
    if rsi < 30:
        return EnsembleVote(
            method=method,
            direction=Direction.BULLISH,
            confidence=REVERSAL_CONFIDENCE,
            reasoning="Oversold, bounce potential",
        )
    return EnsembleVote(
        method=method,
        confidence=TECHNICAL_BASELINE,
        reasoning="Indicators neutral",
    )


def neutral_ai_vote() -> EnsembleVote:
    return EnsembleVote(method=AI_METHOD, confidence=NEUTRAL_CONFIDENCE, reasoning=AI_UNAVAILABLE)


# ──────────────────────────────────────────────
# Reconciliation & gating
# ──────────────────────────────────────────────

def reconcile(votes: list[EnsembleVote]) -> tuple[Direction, float, int]:
    """Majority of ``CONSENSUS_REQUIRED`` wins; returns (direction, confidence, consensus)."""
    for direction in (Direction.BULLISH, Direction.BEARISH):
        agreeing = [v for v in votes if v.direction == direction]
        if len(agreeing) >= CONSENSUS_REQUIRED:
            confidence = sum(v.confidence for v in agreeing) / len(agreeing)
            return direction, confidence, len(agreeing)
    return Direction.NEUTRAL, NEUTRAL_CONFIDENCE, 0


def apply_proximity_penalty(
    direction: Direction,
    confidence: float,
    near_support: bool,
    near_resistance: bool,
) -> float:
    if direction == Direction.BULLISH and near_resistance:
        return confidence * PROXIMITY_PENALTY
    if direction == Direction.BEARISH and near_support:
        return confidence * PROXIMITY_PENALTY
    return confidence


def quality_gates(
    direction: Direction,
    confidence: float,
    similar_count: int,
    consensus_count: int,
) -> tuple[QualityMetrics, TradeAction]:
    metrics = QualityMetrics(
        meets_confidence_threshold=confidence >= CONFIDENCE_GATE,
        has_enough_patterns=similar_count >= MIN_SIMILAR_FOR_TRADE,
        has_consensus=consensus_count >= CONSENSUS_REQUIRED,
    )
    passed = (
        metrics.meets_confidence_threshold
        and metrics.has_enough_patterns
        and metrics.has_consensus
    )
    metrics.overall_quality = "HIGH" if passed else "MEDIUM"

    action = TradeAction.WAIT
    if passed and direction == Direction.BULLISH:
        action = TradeAction.BUY
    elif passed and direction == Direction.BEARISH:
        action = TradeAction.SELL
    return metrics, action


def take_profit_level(observation: ChartObservation, direction: Direction) -> Optional[float]:
    """Nearest opposing key level in the predicted direction."""
    price = observation.current_price
    if direction == Direction.BULLISH:
        above = [p for p in observation.resistances() if p > price]
        return min(above) if above else None
    if direction == Direction.BEARISH:
        below = [p for p in observation.supports() if p < price]
        return max(below) if below else None
    return None


def build_recommendation(
    action: TradeAction,
    confidence: float,
    current_price: float,
    atr: float,
    take_profit: Optional[float],
) -> TradingRecommendation:
    size = PositionSize.MEDIUM if confidence > MEDIUM_SIZE_CONFIDENCE else PositionSize.SMALL
    if action == TradeAction.WAIT:
        return TradingRecommendation(action=action, take_profit=take_profit, position_size=size)

    offset = atr * STOP_ATR_MULTIPLE
    stop = current_price - offset if action == TradeAction.BUY else current_price + offset
    return TradingRecommendation(
        action=action,
        entry_level=current_price,
        stop_loss=round(stop, 2),
        take_profit=take_profit,
        position_size=size,
    )


def risk_factors(
    observation: ChartObservation,
    confidence: float,
    similar_count: int,
    volatility: Optional[VolatilityRegime],
) -> list[str]:
    factors = []
    if observation.near_resistance:
        factors.append("Near resistance level")
    if observation.near_support:
        factors.append("Near support level")
    if confidence < IDEAL_CONFIDENCE:
        factors.append("Below ideal confidence threshold")
    if similar_count < MIN_SIMILAR_FOR_TRADE:
        factors.append("Limited historical pattern data")
    if volatility == VolatilityRegime.HIGH:
        factors.append("High volatility environment")
    return factors


def _similar_summary(record: dict) -> SimilarPattern:
    session = (
        record.get("session_type")
        or (record.get("session_details") or {}).get("session_type")
        or "session"
    )
    return SimilarPattern(
        id=record.get("id"),
        date=record.get("chart_date"),
        similarity_score=record["similarity_score"],
        outcome=record_outcome(record) or "unknown",
        reasoning=(
            f"{record.get('sentiment_label', 'neutral')} on "
            f"{record.get('day_of_week', 'unknown')} during {session}"
        ),
    )


# ──────────────────────────────────────────────
# Fire-and-forget writes
# ──────────────────────────────────────────────

_pending_writes: set[asyncio.Task] = set()


def _dispatch(coro: Awaitable) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)
    return task


async def flush_pending_writes() -> None:
    """Wait for detached feedback writes (shutdown, tests)."""
    if _pending_writes:
        await asyncio.gather(*list(_pending_writes), return_exceptions=True)


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class EnsembleEngine:
    """Runs the full prediction pipeline for one chart screenshot.

    Usage:
        engine = get_ensemble_engine()
        result = await engine.predict(image_bytes, "mnq_5m.png")
    """

    def __init__(
        self,
        vision: Optional[VisionEngine] = None,
        repository: Optional[ChartRepository] = None,
    ):
        self._vision = vision
        self.repository = repository or ChartRepository()

    @property
    def vision(self) -> VisionEngine:
        if self._vision is None:
            self._vision = get_vision_engine()
        return self._vision

    async def _read(self, query: Callable[..., list[dict]], *args) -> list[dict]:
        """Run a repository read off the event loop; a failed read is empty history."""
        try:
            return await asyncio.to_thread(query, *args)
        except Exception as exc:
            log.error(
                "ensemble.history_read_failed",
                query=getattr(query, "__name__", repr(query)),
                error=str(exc),
            )
            return []

    async def _ai_vote(self, current: dict, similar: list[dict]) -> EnsembleVote:
        timeout = get_settings().vision_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.vision.predict_direction, current, similar),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("ensemble.ai_vote_timeout", timeout_s=timeout)
        except Exception as exc:
            log.warning("ensemble.ai_vote_failed", error=str(exc)[:200])
        return neutral_ai_vote()

    async def _save_feedback(self, feedback: PredictionFeedback) -> None:
        try:
            await asyncio.to_thread(
                self.repository.save_feedback, feedback.model_dump(mode="json"),
            )
            log.debug("ensemble.feedback_saved", direction=feedback.predicted_direction.value)
        except Exception as exc:
            log.error("ensemble.feedback_failed", error=str(exc))

    async def predict(
        self,
        image_bytes: bytes,
        filename: str = "chart.png",
        mime_type: str = "image/png",
    ) -> PredictionResult:
        """Predict the next move for a chart screenshot.

        Raises:
            UpstreamUnavailableError: the vision gateway could not describe the chart.
        """
        settings = get_settings()

        # 1. current chart, with the history fetch running alongside
        with trace_span("ensemble.collecting_current_analysis", metadata={"filename": filename}):
            observation, history = await asyncio.gather(
                asyncio.to_thread(
                    self.vision.describe_chart, image_bytes, filename, None, mime_type,
                ),
                self._read(self.repository.historical_with_outcomes),
            )

        # 2. indicators and regime
        indicators = indicator_engine.synthesize(
            observation.price_direction,
            observation.momentum,
            observation.volatility,
            observation.volume_profile,
            observation.current_price,
            observation.extended,
        )
        regime = regime_engine.classify(
            observation.price_direction,
            observation.momentum,
            observation.volatility,
            indicators.rsi,
        )
        current = observation.enrich(indicators, regime)
        current_record = current.to_record()

        # 3. same-weekday cohort
        with trace_span("ensemble.fetching_historical"):
            day_records = await self._read(self.repository.by_day_of_week, current.day_of_week)

        # 4. similarity
        with trace_span("ensemble.scoring_similarity"):
            similar = rank_similar(current_record, history)

        # 5-8. votes; the model vote is the slow one and runs while the rest are computed
        with trace_span("ensemble.voting"):
            ai_task = asyncio.ensure_future(
                self._ai_vote(current_record, similar[:AI_CONTEXT_PATTERNS]),
            )
            votes = [
                pattern_vote(similar),
                day_of_week_vote(day_records),
                technical_vote(indicators.rsi, indicators.macd.value),
            ]
            votes.append(await ai_task)

        # 9-10. reconciliation
        with trace_span("ensemble.reconciling"):
            direction, confidence, consensus = reconcile(votes)
            confidence = apply_proximity_penalty(
                direction, confidence, current.near_support, current.near_resistance,
            )

        # 11-12. gates and recommendation
        with trace_span("ensemble.gating"):
            metrics, action = quality_gates(direction, confidence, len(similar), consensus)
            target = take_profit_level(current, direction)
            recommendation = build_recommendation(
                action, confidence, current.current_price, indicators.atr, target,
            )

        with trace_span("ensemble.emitting"):
            move_direction = {
                Direction.BULLISH: "up",
                Direction.BEARISH: "down",
            }.get(direction, "sideways")
            prediction = Prediction(
                price_direction=direction,
                confidence_score=confidence,
                consensus_count=consensus,
                ensemble_agreement=f"{consensus}/{VOTE_COUNT} methods agree",
                predicted_move=PredictedMove(
                    direction=move_direction,
                    magnitude="medium" if confidence > MEDIUM_SIZE_CONFIDENCE else "small",
                    target_levels=[target] if target is not None else [],
                    timeframe=f"{settings.prediction_timeframe_minutes}min",
                ),
                similar_patterns=[_similar_summary(r) for r in similar[:AI_CONTEXT_PATTERNS]],
                ensemble_breakdown=votes,
                risk_factors=risk_factors(current, confidence, len(similar), regime.volatility),
                trading_recommendation=recommendation,
                reasoning=(
                    f"Ensemble prediction with {consensus}/{VOTE_COUNT} methods agreeing on "
                    f"{direction.value} direction. "
                    f"{'High confidence setup.' if confidence >= CONFIDENCE_GATE else 'Moderate confidence - wait for confirmation.'} "
                    f"Pattern analysis: {len(similar)} similar historical patterns found."
                ),
                quality_metrics=metrics,
            )

            # 13. feedback, never awaited by the caller
            _dispatch(self._save_feedback(PredictionFeedback(
                predicted_direction=direction,
                predicted_price_target=target,
                predicted_timeframe_minutes=settings.prediction_timeframe_minutes,
                confidence_score=confidence,
                conditions={
                    "day_of_week": current.day_of_week,
                    "session_type": current.session_type,
                    "market_regime": regime.regime.value,
                    "volatility_regime": regime.volatility.value,
                    "rsi": indicators.rsi,
                    "near_resistance": current.near_resistance,
                    "near_support": current.near_support,
                },
                pattern_type=current.pattern_type or "unknown",
                similar_patterns_used=len(similar),
                ensemble_agreement_score=consensus / VOTE_COUNT,
            )))

        log.info(
            "ensemble.predicted",
            direction=direction.value,
            confidence=round(confidence, 3),
            consensus=consensus,
            similar=len(similar),
            history=len(history),
            action=action.value,
        )
        return PredictionResult(
            current_analysis={
                **current_record,
                "technical_indicators": indicators.model_dump(mode="json"),
            },
            prediction=prediction,
            historical_patterns_count=len(history),
            similar_patterns_count=len(similar),
        )


# ── Singleton ──

_engine: Optional[EnsembleEngine] = None


def get_ensemble_engine() -> EnsembleEngine:
    global _engine
    if _engine is None:
        _engine = EnsembleEngine()
    return _engine
