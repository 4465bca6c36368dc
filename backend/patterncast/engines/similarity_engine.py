"""
PatternCast — Similarity Scorer

Weighted categorical match between the current chart and a stored one.
Records are plain mappings (rows of ``chart_analyses``) because older rows
carry some features only under nested keys; each dimension reads its value
through an ordered accessor chain, first truthy value wins.

The weights, chains and thresholds are fixed: scores are compared against
records scored the same way, so changing any of them changes which
historical patterns qualify.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

import structlog

log = structlog.get_logger(__name__)

SIMILARITY_THRESHOLD = 0.60
MAX_SIMILAR = 20
RSI_BONUS = 0.10
RSI_PROXIMITY = 10.0


@dataclass(frozen=True)
class SimilarityWeights:
    day_of_week: float = 0.15
    session_time: float = 0.20
    price_pattern: float = 0.25
    volatility: float = 0.15
    volume_profile: float = 0.10
    momentum: float = 0.15

    @property
    def total(self) -> float:
        return (
            self.day_of_week + self.session_time + self.price_pattern
            + self.volatility + self.volume_profile + self.momentum
        )


DEFAULT_WEIGHTS = SimilarityWeights()


# ──────────────────────────────────────────────
# Accessor chains
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class FieldChain:
    """Ordered list of dotted paths read until one yields a truthy value."""
    paths: tuple[str, ...]
    default: str = ""

    def read(self, record: Mapping[str, Any]) -> str:
        for path in self.paths:
            value = _dig(record, path)
            if value:
                return str(getattr(value, "value", value)).lower()
        return self.default


DAY_OF_WEEK = FieldChain(("day_of_week",))
SESSION = FieldChain((
    "session_type",
    "temporal_patterns.session_type",
    "session_details.session_type",
))
DIRECTION = FieldChain(("sentiment_label", "price_direction"), "neutral")
VOLATILITY = FieldChain(("volatility_regime", "pattern_features.volatility"), "medium")
VOLUME = FieldChain(("volume_regime", "pattern_features.volume_profile"), "normal")
MOMENTUM = FieldChain(("momentum", "pattern_features.momentum"), "moderate")


def _dig(record: Mapping[str, Any], path: str) -> Any:
    node: Any = record
    for key in path.split("."):
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _either_contains(a: str, b: str) -> bool:
    if not a or not b:
        return a == b
    return a in b or b in a


def _rsi(record: Mapping[str, Any]) -> Optional[float]:
    value = record.get("rsi_value")
    try:
        return float(value) if value else None
    except (TypeError, ValueError):
        return None


# ──────────────────────────────────────────────
# Scoring
# ──────────────────────────────────────────────

def score(
    current: Mapping[str, Any],
    historical: Mapping[str, Any],
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> float:
    """Similarity in [0, 1] between two chart records."""
    total = 0.0

    if DAY_OF_WEEK.read(current) == DAY_OF_WEEK.read(historical):
        total += weights.day_of_week

    if _either_contains(SESSION.read(current), SESSION.read(historical)):
        total += weights.session_time

    if DIRECTION.read(current) == DIRECTION.read(historical):
        total += weights.price_pattern

    if VOLATILITY.read(current) == VOLATILITY.read(historical):
        total += weights.volatility

    if _either_contains(VOLUME.read(current), VOLUME.read(historical)):
        total += weights.volume_profile

    if MOMENTUM.read(current) == MOMENTUM.read(historical):
        total += weights.momentum

    rsi_a, rsi_b = _rsi(current), _rsi(historical)
    if rsi_a is not None and rsi_b is not None and abs(rsi_a - rsi_b) < RSI_PROXIMITY:
        total += RSI_BONUS

    # Rounded so float sums such as 0.15 + 0.20 + 0.25 sit exactly on 0.60.
    return min(1.0, round(total, 6))


def rank_similar(
    current: Mapping[str, Any],
    records: Iterable[Mapping[str, Any]],
    threshold: float = SIMILARITY_THRESHOLD,
    limit: int = MAX_SIMILAR,
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> list[dict]:
    """Score every record, keep those at or above ``threshold``, best first.

    Returns copies of the records with a ``similarity_score`` key added.
    """
    scored = []
    considered = 0
    for record in records:
        considered += 1
        s = score(current, record, weights)
        if s >= threshold:
            scored.append({**record, "similarity_score": s})

    scored.sort(key=lambda r: r["similarity_score"], reverse=True)
    log.debug(
        "similarity.ranked",
        considered=considered,
        qualifying=len(scored),
        kept=min(len(scored), limit),
    )
    return scored[:limit]
