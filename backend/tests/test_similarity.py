"""
PatternCast — Similarity & Timeframe Tests

Tests for:
- Weighted similarity scoring and accessor-chain fallbacks
- Threshold / sort / truncation of similar patterns
- Multi-timeframe alignment
"""

import pytest


def _record(**overrides):
    base = {
        "day_of_week": "friday",
        "session_type": "market-open",
        "sentiment_label": "bullish",
        "price_direction": "bullish",
        "volatility_regime": "high",
        "volume_regime": "average",
        "momentum": "strong",
        "rsi_value": 80.0,
    }
    base.update(overrides)
    return base


# ════════════════════════════════════════════════
#  SCORE
# ════════════════════════════════════════════════


class TestSimilarityScore:

    def test_identical_records_clamp_to_one(self):
        """All six dimensions plus the RSI bonus is 1.10 raw, clamped to 1.0."""
        from patterncast.engines.similarity_engine import score
        record = _record()
        assert score(record, record) == 1.0

    def test_weights_sum_to_one(self):
        from patterncast.engines.similarity_engine import DEFAULT_WEIGHTS
        assert DEFAULT_WEIGHTS.total == pytest.approx(1.0)

    def test_no_match_is_zero(self):
        from patterncast.engines.similarity_engine import score
        a = _record()
        b = {
            "day_of_week": "monday",
            "session_type": "lunch",
            "sentiment_label": "bearish",
            "volatility_regime": "low",
            "volume_regime": "high",
            "momentum": "weak",
            "rsi_value": 20.0,
        }
        assert score(a, b) == 0.0

    def test_day_of_week_case_insensitive(self):
        from patterncast.engines.similarity_engine import score
        a = {"day_of_week": "Friday"}
        b = {"day_of_week": "FRIDAY"}
        assert score(a, b) == pytest.approx(1.0)
        # every other dimension falls back to the same default on both sides
        assert score(a, {"day_of_week": "monday"}) == pytest.approx(0.85)

    def test_session_substring_match(self):
        from patterncast.engines.similarity_engine import score
        a = _record(session_type="market-open")
        b = _record(session_type="market-open drive")
        assert score(a, b) == 1.0

    def test_session_nested_fallback(self):
        from patterncast.engines.similarity_engine import score
        current = _record(rsi_value=None)
        historical = _record(rsi_value=None)
        del historical["session_type"]
        historical["temporal_patterns"] = {"session_type": "market-open"}
        assert score(current, historical) == pytest.approx(1.0)

    def test_session_details_is_last_fallback(self):
        from patterncast.engines.similarity_engine import SESSION
        record = {"session_details": {"session_type": "power-hour"}}
        assert SESSION.read(record) == "power-hour"
        record["temporal_patterns"] = {"session_type": "lunch"}
        assert SESSION.read(record) == "lunch"

    def test_direction_prefers_sentiment_label(self):
        from patterncast.engines.similarity_engine import DIRECTION
        assert DIRECTION.read({"sentiment_label": "bearish", "price_direction": "bullish"}) == "bearish"
        assert DIRECTION.read({"price_direction": "bullish"}) == "bullish"
        assert DIRECTION.read({}) == "neutral"

    def test_volatility_and_momentum_nested_fallback(self):
        from patterncast.engines.similarity_engine import MOMENTUM, VOLATILITY, VOLUME
        record = {"pattern_features": {"volatility": "high", "momentum": "weak", "volume_profile": "low"}}
        assert VOLATILITY.read(record) == "high"
        assert MOMENTUM.read(record) == "weak"
        assert VOLUME.read(record) == "low"

    def test_chain_defaults(self):
        from patterncast.engines.similarity_engine import MOMENTUM, VOLATILITY, VOLUME
        assert VOLATILITY.read({}) == "medium"
        assert VOLUME.read({}) == "normal"
        assert MOMENTUM.read({}) == "moderate"

    def test_rsi_bonus_requires_both_values(self):
        from patterncast.engines.similarity_engine import score
        a = _record(day_of_week="monday")
        b = _record(day_of_week="tuesday", rsi_value=None)
        assert score(a, b) == pytest.approx(0.85)

    def test_rsi_bonus_within_ten_points(self):
        from patterncast.engines.similarity_engine import score
        a = _record(day_of_week="monday", rsi_value=65.0)
        assert score(a, _record(day_of_week="tuesday", rsi_value=74.0)) == pytest.approx(0.95)
        assert score(a, _record(day_of_week="tuesday", rsi_value=75.0)) == pytest.approx(0.85)

    def test_score_always_in_unit_interval(self):
        from patterncast.engines.similarity_engine import score
        variants = [
            _record(),
            _record(sentiment_label="bearish"),
            _record(momentum="weak", rsi_value=30.0),
            {},
        ]
        for a in variants:
            for b in variants:
                assert 0.0 <= score(a, b) <= 1.0

    def test_enum_values_are_read(self):
        from patterncast.engines.similarity_engine import VOLATILITY
        from patterncast.models import VolatilityRegime
        assert VOLATILITY.read({"volatility_regime": VolatilityRegime.HIGH}) == "high"


# ════════════════════════════════════════════════
#  RANKING
# ════════════════════════════════════════════════


class TestRankSimilar:

    def test_threshold_is_inclusive_and_sorted(self):
        """Scores [0.9, 0.6, 0.59, 0.3] keep exactly [0.9, 0.6]."""
        from patterncast.engines.similarity_engine import rank_similar

        fake_scores = {"a": 0.9, "b": 0.6, "c": 0.59, "d": 0.3}
        records = [{"id": k} for k in ("d", "b", "c", "a")]

        from unittest.mock import patch
        with patch(
            "patterncast.engines.similarity_engine.score",
            side_effect=lambda current, rec, weights: fake_scores[rec["id"]],
        ):
            ranked = rank_similar({}, records)

        assert [r["similarity_score"] for r in ranked] == [0.9, 0.6]
        assert [r["id"] for r in ranked] == ["a", "b"]

    def test_exact_weight_sum_on_threshold_qualifies(self):
        """day + session + direction = 0.15 + 0.20 + 0.25 sits exactly on 0.60."""
        from patterncast.engines.similarity_engine import rank_similar
        current = _record(rsi_value=None)
        historical = {
            "id": "x",
            "day_of_week": "friday",
            "session_type": "market-open",
            "sentiment_label": "bullish",
            "volatility_regime": "low",
            "volume_regime": "below",
            "momentum": "weak",
        }
        ranked = rank_similar(current, [historical])
        assert len(ranked) == 1
        assert ranked[0]["similarity_score"] == 0.6

    def test_truncates_to_limit(self):
        from patterncast.engines.similarity_engine import rank_similar
        records = [_record(id=str(i)) for i in range(30)]
        assert len(rank_similar(_record(), records)) == 20
        assert len(rank_similar(_record(), records, limit=5)) == 5

    def test_does_not_mutate_input(self):
        from patterncast.engines.similarity_engine import rank_similar
        record = _record(id="1")
        rank_similar(_record(), [record])
        assert "similarity_score" not in record


# ════════════════════════════════════════════════
#  TIMEFRAME ALIGNMENT
# ════════════════════════════════════════════════


class TestTimeframeAlignment:

    def test_partial_alignment(self):
        from patterncast.engines.timeframe_engine import analyze
        result = analyze("bullish", "bullish", "bearish")
        assert result.all_aligned is False
        assert result.alignment_score == 0.33

    def test_full_alignment(self):
        from patterncast.engines.timeframe_engine import analyze
        result = analyze("bearish", "bearish", "bearish")
        assert result.all_aligned is True
        assert result.alignment_score == 1.0

    def test_outer_pair_only(self):
        from patterncast.engines.timeframe_engine import analyze
        assert analyze("bullish", "neutral", "bullish").alignment_score == 0.34

    def test_all_different(self):
        from patterncast.engines.timeframe_engine import analyze
        result = analyze("bullish", "neutral", "bearish")
        assert result.alignment_score == 0.0
        assert result.all_aligned is False

    def test_substring_alignment_without_exact_equality(self):
        from patterncast.engines.timeframe_engine import analyze
        result = analyze("Bullish", "trending up", "bullish breakout")
        assert result.all_aligned is True
        assert result.alignment_score == 0.0

    def test_labels_normalized(self):
        from patterncast.engines.timeframe_engine import analyze
        result = analyze(" BULLISH ", "bullish", "Bullish")
        assert result.tf_5min == "bullish"
        assert result.alignment_score == 1.0
