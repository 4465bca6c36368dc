"""
PatternCast — Timeframe Alignment Analyzer

Compares the direction labels read from the 5, 15 and 60 minute
perspectives of a chart.
"""

from __future__ import annotations

from patterncast.models import TimeframeAlignment

# Pairwise weights: (5m, 15m), (15m, 60m), (5m, 60m).
PAIR_WEIGHTS = (0.33, 0.33, 0.34)


def _is_bullish(label: str) -> bool:
    return "bullish" in label or "up" in label


def _is_bearish(label: str) -> bool:
    return "bearish" in label or "down" in label


def analyze(tf5: str, tf15: str, tf60: str) -> TimeframeAlignment:
    labels = [(tf or "").strip().lower() for tf in (tf5, tf15, tf60)]
    tf_5min, tf_15min, tf_60min = labels

    all_aligned = all(_is_bullish(l) for l in labels) or all(_is_bearish(l) for l in labels)

    pairs = ((tf_5min, tf_15min), (tf_15min, tf_60min), (tf_5min, tf_60min))
    score = sum(w for (a, b), w in zip(pairs, PAIR_WEIGHTS) if a == b)

    return TimeframeAlignment(
        tf_5min=tf_5min,
        tf_15min=tf_15min,
        tf_60min=tf_60min,
        alignment_score=round(score, 2),
        all_aligned=all_aligned,
    )
