"""
PatternCast — Regime Classifier

Discretises the chart description plus the synthesised RSI into a trend
regime and a volatility bucket.
"""

from __future__ import annotations

from patterncast.engines.indicator_engine import classify_direction
from patterncast.models import (
    Direction,
    MarketRegime,
    Regime,
    VolatilityRegime,
    VolumeRegime,
)

STRONG_BULL_RSI = 60.0
STRONG_BEAR_RSI = 40.0

# Fixed, not measured.
REGIME_CONFIDENCE = 0.75


def classify(direction: str, momentum: str, volatility: str, rsi: float) -> MarketRegime:
    trend = classify_direction(direction)
    text = (momentum or "").lower()
    strong = "strong" in text
    weak = "weak" in text

    if trend == Direction.BULLISH and strong and rsi > STRONG_BULL_RSI:
        regime = Regime.STRONG_BULL
    elif trend == Direction.BULLISH and not weak:
        regime = Regime.WEAK_BULL
    elif trend == Direction.BEARISH and strong and rsi < STRONG_BEAR_RSI:
        regime = Regime.STRONG_BEAR
    elif trend == Direction.BEARISH and not weak:
        regime = Regime.WEAK_BEAR
    else:
        regime = Regime.NEUTRAL

    vol = (volatility or "").lower()
    if "high" in vol:
        volatility_regime = VolatilityRegime.HIGH
    elif "low" in vol:
        volatility_regime = VolatilityRegime.LOW
    else:
        volatility_regime = VolatilityRegime.NORMAL

    # The volume ratio from the indicator synthesizer is not consulted here;
    # stored records all carry "average" and similarity matching relies on it.
    return MarketRegime(
        regime=regime,
        volatility=volatility_regime,
        volume=VolumeRegime.AVERAGE,
        confidence=REGIME_CONFIDENCE,
    )
