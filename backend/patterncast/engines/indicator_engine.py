"""
PatternCast — Indicator Synthesizer

Maps the categorical labels returned by the vision model (direction, momentum,
volatility, volume profile) to numeric pseudo-indicators: RSI, ATR, MACD,
volume ratio and VWAP distance.

No price series is involved. Every function here is total: unknown labels
fall through to the neutral value.
"""

from __future__ import annotations

from patterncast.models import MACD, Direction, TechnicalIndicators

NEUTRAL_RSI = 50.0
DIRECTION_RSI_OFFSET = 15.0
STRONG_MOMENTUM_PUSH = 10.0
WEAK_MOMENTUM_PULL = 5.0
HIGH_VOLATILITY_PUSH = 5.0

ATR_BASE_PCT = 0.002
ATR_VOLATILITY_MULTIPLIER = {"high": 2.5, "low": 0.5}

# Bullish MACD magnitude by momentum; bearish is the negation.
MACD_MAGNITUDE = {"strong": 25.0, "weak": 5.0}
MACD_DEFAULT_MAGNITUDE = 15.0
MACD_SIGNAL_RATIO = 0.7

VOLUME_RATIOS = (
    (("high", "heavy"), 1.5),
    (("low", "light"), 0.6),
)

VWAP_DISTANCE = 0.003  # fraction of price, signed by direction


def classify_direction(label: str | None) -> Direction:
    """Substring match: bullish/up → bullish, bearish/down → bearish."""
    text = (label or "").lower()
    if "bullish" in text or "up" in text:
        return Direction.BULLISH
    if "bearish" in text or "down" in text:
        return Direction.BEARISH
    return Direction.NEUTRAL


def _has(label: str | None, word: str) -> bool:
    return word in (label or "").lower()


def _momentum_key(momentum: str | None) -> str:
    if _has(momentum, "strong"):
        return "strong"
    if _has(momentum, "weak"):
        return "weak"
    return "moderate"


def calculate_rsi(direction: str, momentum: str, volatility: str) -> float:
    """RSI estimate in [0, 100]."""
    trend = classify_direction(direction)
    sign = {Direction.BULLISH: 1, Direction.BEARISH: -1}.get(trend, 0)

    rsi = NEUTRAL_RSI + sign * DIRECTION_RSI_OFFSET

    strength = _momentum_key(momentum)
    if strength == "strong":
        rsi += sign * STRONG_MOMENTUM_PUSH
    elif strength == "weak":
        rsi -= sign * WEAK_MOMENTUM_PULL

    # High volatility amplifies whichever side the value already leans to.
    if _has(volatility, "high"):
        if rsi > NEUTRAL_RSI:
            rsi += HIGH_VOLATILITY_PUSH
        elif rsi < NEUTRAL_RSI:
            rsi -= HIGH_VOLATILITY_PUSH

    return max(0.0, min(100.0, rsi))


def calculate_atr(volatility: str, current_price: float) -> float:
    """ATR in price points, scaled from 0.2% of the current price."""
    base = abs(current_price) * ATR_BASE_PCT
    for word, multiplier in ATR_VOLATILITY_MULTIPLIER.items():
        if _has(volatility, word):
            return base * multiplier
    return base


def calculate_macd(direction: str, momentum: str) -> MACD:
    trend = classify_direction(direction)
    magnitude = MACD_MAGNITUDE.get(_momentum_key(momentum), MACD_DEFAULT_MAGNITUDE)
    if trend == Direction.BULLISH:
        value = magnitude
    elif trend == Direction.BEARISH:
        value = -magnitude
    else:
        value = 0.0
    signal = value * MACD_SIGNAL_RATIO
    return MACD(value=value, signal=signal, histogram=value - signal)


def calculate_volume_vs_average(volume_profile: str) -> float:
    for words, ratio in VOLUME_RATIOS:
        if any(_has(volume_profile, w) for w in words):
            return ratio
    return 1.0


def calculate_distance_from_vwap(direction: str, extended: bool = False) -> float:
    """Signed fraction above (+) or below (-) VWAP.

    The label is read like every other indicator input, so up/down count
    as bullish/bearish.
    """
    trend = classify_direction(direction)
    if trend == Direction.BULLISH:
        distance = VWAP_DISTANCE
    elif trend == Direction.BEARISH:
        distance = -VWAP_DISTANCE
    else:
        distance = 0.0
    return distance * 2 if extended else distance


def synthesize(
    direction: str,
    momentum: str,
    volatility: str,
    volume_profile: str,
    current_price: float,
    extended: bool = False,
) -> TechnicalIndicators:
    """Derive the full indicator set from one chart description."""
    return TechnicalIndicators(
        rsi=calculate_rsi(direction, momentum, volatility),
        atr=calculate_atr(volatility, current_price),
        macd=calculate_macd(direction, momentum),
        volume_vs_average=calculate_volume_vs_average(volume_profile),
        distance_from_vwap=calculate_distance_from_vwap(direction, extended),
    )
