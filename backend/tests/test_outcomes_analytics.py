"""
PatternCast — Analysis, Outcome & Accuracy Tests

Tests for:
- Multi-timeframe chart analysis and persistence
- Outcome recording (defaults, success flag, append-only)
- Dashboard, success rates, clusters and confidence calibration
"""

import asyncio
from unittest.mock import MagicMock

import pytest


def _repo():
    from patterncast.db.chart_repository import ChartRepository
    from patterncast.db.record_store import InMemoryRecordStore
    return ChartRepository(InMemoryRecordStore())


# ════════════════════════════════════════════════
#  MULTI-TIMEFRAME ANALYSIS
# ════════════════════════════════════════════════


def _vision_by_timeframe(labels):
    """Vision mock answering with ``labels[timeframe]``; a missing label is an outage."""
    from patterncast.exceptions import UpstreamUnavailableError
    from patterncast.models import ChartObservation

    def describe(image_bytes, filename=None, timeframe=None, mime_type="image/png"):
        label = labels.get(timeframe)
        if label is None:
            raise UpstreamUnavailableError("vision_gateway", "timeout")
        return ChartObservation(
            filename=filename,
            sentiment_label=label,
            price_direction=label,
            momentum="strong",
            volatility="high",
            volume_profile="high",
            current_price=16000.0,
        )

    vision = MagicMock()
    vision.describe_chart.side_effect = describe
    return vision


class TestAnalysisEngine:

    def test_three_timeframes_and_persist(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        repo = _repo()
        vision = _vision_by_timeframe({"5min": "bullish", "15min": "bullish", "60min": "bearish"})

        result = asyncio.run(AnalysisEngine(vision=vision, repository=repo).analyze(b"img", "mnq.png"))

        assert vision.describe_chart.call_count == 3
        assert sorted(result.timeframe_analyses) == ["15min", "5min", "60min"]
        assert result.timeframe_alignment.alignment_score == 0.33
        assert result.timeframe_alignment.all_aligned is False
        assert result.technical_indicators.rsi == 80.0
        assert result.analysis.rsi_value == 80.0
        assert result.stored is True

        stored = repo.get_analysis(result.analysis.id)
        assert stored["filename"] == "mnq.png"
        assert stored["timeframe_alignment"]["alignment_score"] == 0.33

    def test_missing_timeframe_uses_primary_label(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        vision = _vision_by_timeframe({"5min": "bullish", "15min": "bullish"})
        result = asyncio.run(AnalysisEngine(vision=vision, repository=_repo()).analyze(b"img"))
        assert sorted(result.timeframe_analyses) == ["15min", "5min"]
        assert result.timeframe_alignment.alignment_score == 1.0

    def test_first_success_is_primary(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        vision = _vision_by_timeframe({"15min": "bearish", "60min": "bullish"})
        result = asyncio.run(AnalysisEngine(vision=vision, repository=_repo()).analyze(b"img"))
        assert result.analysis.sentiment_label == "bearish"

    def test_all_timeframes_failing_raises(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        from patterncast.exceptions import UpstreamUnavailableError
        engine = AnalysisEngine(vision=_vision_by_timeframe({}), repository=_repo())
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            asyncio.run(engine.analyze(b"img"))
        assert exc_info.value.reason == "no_timeframe_described"

    def test_persist_failure_still_returns_analysis(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        repo = MagicMock()
        repo.save_analysis.side_effect = RuntimeError("disk full")
        vision = _vision_by_timeframe({"5min": "bullish", "15min": "bullish", "60min": "bullish"})
        result = asyncio.run(AnalysisEngine(vision=vision, repository=repo).analyze(b"img"))
        assert result.stored is False
        assert result.analysis.id is None

    def test_persist_disabled(self):
        from patterncast.engines.analysis_engine import AnalysisEngine
        repo = _repo()
        vision = _vision_by_timeframe({"5min": "neutral", "15min": "neutral", "60min": "neutral"})
        result = asyncio.run(
            AnalysisEngine(vision=vision, repository=repo).analyze(b"img", persist=False),
        )
        assert result.stored is False
        assert repo.all_analyses() == []


# ════════════════════════════════════════════════
#  OUTCOMES
# ════════════════════════════════════════════════


class TestOutcomeTracker:

    def _setup(self):
        from patterncast.engines.outcome_tracker import OutcomeTracker
        repo = _repo()
        analysis = repo.save_analysis({
            "price_direction": "bullish",
            "confidence_score": 0.85,
            "pattern_type": "breakout",
        })
        return OutcomeTracker(repo), repo, analysis["id"]

    def test_defaults_from_analysis(self):
        from patterncast.models import OutcomeRequest
        tracker, repo, analysis_id = self._setup()

        row = tracker.record_outcome(OutcomeRequest(
            chart_analysis_id=analysis_id, actual_direction="bullish",
        ))

        assert row["predicted_direction"] == "bullish"
        assert row["success"] is True
        assert row["confidence_score"] == 0.85
        assert row["pattern_type"] == "breakout"
        assert repo.get_analysis(analysis_id)["actual_outcome"] == "bullish"

    def test_explicit_prediction_miss(self):
        from patterncast.models import OutcomeRequest
        tracker, _, analysis_id = self._setup()
        row = tracker.record_outcome(OutcomeRequest(
            chart_analysis_id=analysis_id,
            actual_direction="bullish",
            predicted_direction="bearish",
            confidence_score=72,
            actual_price=16042.5,
            notes="faded at the open",
        ))
        assert row["success"] is False
        assert row["confidence_score"] == pytest.approx(0.72)
        assert row["actual_price"] == 16042.5
        assert row["outcome_notes"] == "faded at the open"

    def test_unknown_analysis(self):
        from patterncast.exceptions import RecordNotFoundError
        from patterncast.models import OutcomeRequest
        tracker, repo, _ = self._setup()
        with pytest.raises(RecordNotFoundError):
            tracker.record_outcome(OutcomeRequest(chart_analysis_id="nope", actual_direction="bearish"))
        assert repo.outcomes() == []

    def test_outcome_is_append_only(self):
        from patterncast.exceptions import OutcomeAlreadyRecordedError
        from patterncast.models import OutcomeRequest
        tracker, repo, analysis_id = self._setup()
        request = OutcomeRequest(chart_analysis_id=analysis_id, actual_direction="bearish")
        tracker.record_outcome(request)
        with pytest.raises(OutcomeAlreadyRecordedError):
            tracker.record_outcome(request)
        assert len(repo.outcomes()) == 1

    def test_validated_analysis_becomes_history(self):
        from patterncast.models import OutcomeRequest
        tracker, repo, analysis_id = self._setup()
        assert repo.historical_with_outcomes() == []
        tracker.record_outcome(OutcomeRequest(chart_analysis_id=analysis_id, actual_direction="bullish"))
        assert [r["id"] for r in repo.historical_with_outcomes()] == [analysis_id]


# ════════════════════════════════════════════════
#  ANALYTICS
# ════════════════════════════════════════════════


def _seeded_accuracy():
    """Four analyses (3 breakout, 1 reversal) and two validated breakouts (1 hit, 1 miss)."""
    from patterncast.engines.accuracy_engine import AccuracyEngine
    from patterncast.engines.outcome_tracker import OutcomeTracker
    from patterncast.models import OutcomeRequest

    repo = _repo()
    ids = [
        repo.save_analysis({"pattern_type": "breakout", "confidence_score": c,
                            "price_direction": "bullish", "session_type": "market-open"})["id"]
        for c in (0.9, 0.7, 0.5)
    ]
    reversal = repo.save_analysis({
        "pattern_type": "reversal", "confidence_score": 0.85,
        "price_direction": "bearish", "session_details": {"session_type": "power-hour"},
    })
    tracker = OutcomeTracker(repo)
    tracker.record_outcome(OutcomeRequest(chart_analysis_id=ids[0], actual_direction="bullish"))
    tracker.record_outcome(OutcomeRequest(
        chart_analysis_id=ids[1], actual_direction="bearish", confidence_score=0.85,
    ))
    return AccuracyEngine(repo), ids, reversal["id"]


class TestAccuracyEngine:

    def test_confidence_band(self):
        from patterncast.engines.accuracy_engine import confidence_band
        assert confidence_band(0.8) == "high"
        assert confidence_band(0.6) == "medium"
        assert confidence_band(0.59) == "low"
        assert confidence_band(None) == "low"

    def test_dashboard(self):
        engine, ids, reversal_id = _seeded_accuracy()
        dash = engine.get_dashboard()
        assert dash["total_patterns"] == 4
        assert dash["pattern_type_counts"] == {"breakout": 3, "reversal": 1}
        assert dash["confidence_distribution"] == {"high": 2, "medium": 1, "low": 1}
        assert dash["success_rate"] == 50.0
        assert dash["recent_activity"] == 4
        assert dash["session_distribution"] == {"market-open": 3, "power-hour": 1}
        assert [p["id"] for p in dash["top_patterns"]] == [ids[0], reversal_id, ids[1], ids[2]]

    def test_empty_dashboard(self):
        from patterncast.engines.accuracy_engine import AccuracyEngine
        dash = AccuracyEngine(_repo()).get_dashboard()
        assert dash["total_patterns"] == 0
        assert dash["success_rate"] == 0.0
        assert dash["top_patterns"] == []

    def test_success_rates(self):
        engine, _, _ = _seeded_accuracy()
        rates = engine.get_success_rates()
        assert rates["overall_success_rate"] == 50.0
        assert rates["total_predictions"] == 2
        assert rates["by_pattern"]["breakout"] == {"total": 2, "successful": 1, "success_rate": 50.0}
        assert rates["by_confidence"]["high"]["total"] == 2
        assert rates["by_confidence"]["low"]["success_rate"] == 0.0
        assert rates["time_range"] == "30d"

    def test_success_rates_pattern_filter(self):
        engine, _, _ = _seeded_accuracy()
        rates = engine.get_success_rates(pattern_type="Reversal", time_range="7d")
        assert rates["total_predictions"] == 0
        assert rates["by_confidence"] == {}
        assert rates["time_range"] == "7d"

    def test_unknown_time_range_falls_back(self):
        engine, _, _ = _seeded_accuracy()
        assert engine.get_success_rates(time_range="1y")["time_range"] == "30d"

    def test_clusters(self):
        engine, ids, _ = _seeded_accuracy()
        result = engine.get_pattern_clusters()
        assert result["total_charts_clustered"] == 3
        assert len(result["clusters"]) == 1
        cluster = result["clusters"][0]
        assert cluster["cluster_name"] == "breakout Cluster"
        assert cluster["size"] == 3
        assert cluster["avg_confidence"] == pytest.approx(0.7)
        assert cluster["confidence_range"] == {"min": 0.5, "max": 0.9}
        assert cluster["confidence_threshold"] == pytest.approx(0.6)
        assert cluster["success_rate"] == 50.0
        assert cluster["member_ids"] == sorted(ids)

    def test_clusters_without_charts(self):
        from patterncast.engines.accuracy_engine import AccuracyEngine
        result = AccuracyEngine(_repo()).get_pattern_clusters()
        assert result["clusters"] == []
        assert result["message"] == "No charts available for clustering"

    def test_calibration(self):
        engine, _, _ = _seeded_accuracy()
        result = engine.get_confidence_calibration()
        assert result["total_outcomes"] == 2
        bucket = result["buckets"]["75-100%"]
        assert bucket["sample_size"] == 2
        assert bucket["predicted_confidence"] == 87.5
        assert bucket["actual_success_rate"] == 50.0
        assert bucket["calibration_gap"] == 37.5
        assert bucket["assessment"] == "overconfident"
        assert "0-25%" not in result["buckets"]

    def test_calibration_without_outcomes(self):
        from patterncast.engines.accuracy_engine import AccuracyEngine
        result = AccuracyEngine(_repo()).get_confidence_calibration(days=30)
        assert result == {"days": 30, "total_outcomes": 0, "message": "Insufficient data for calibration."}
