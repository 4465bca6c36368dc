"""
PatternCast — Accuracy Engine

Analytics over stored analyses and validated outcomes: dashboard totals,
success rates by pattern type and confidence band, pattern clusters and
confidence calibration.

Confidence values are 0-1; rates are reported as percentages.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Optional

import structlog

from patterncast.db.chart_repository import ChartRepository

log = structlog.get_logger(__name__)

TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90}
DEFAULT_TIME_RANGE = "30d"

HIGH_CONFIDENCE = 0.80
MEDIUM_CONFIDENCE = 0.60
MIN_CLUSTER_SIZE = 2
TOP_PATTERNS = 10
RECENT_DAYS = 7


def confidence_band(confidence: Optional[float]) -> str:
    conf = confidence or 0.0
    if conf >= HIGH_CONFIDENCE:
        return "high"
    if conf >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def _rate(successful: int, total: int) -> float:
    return round(successful / total * 100, 2) if total else 0.0


def _session(record: dict) -> str:
    return (
        record.get("session_type")
        or (record.get("session_details") or {}).get("session_type")
        or "unknown"
    )


class AccuracyEngine:
    """Prediction accuracy analytics and dashboard."""

    def __init__(self, repository: Optional[ChartRepository] = None):
        self.repository = repository or ChartRepository()

    def get_dashboard(self) -> dict:
        """Totals and distributions across every stored analysis."""
        analyses = self.repository.all_analyses()
        outcomes = self.repository.outcomes()
        successful = sum(1 for o in outcomes if o.get("success"))

        distribution = Counter(confidence_band(a.get("confidence_score")) for a in analyses)
        top = sorted(analyses, key=lambda a: a.get("confidence_score") or 0.0, reverse=True)

        return {
            "total_patterns": len(analyses),
            "pattern_type_counts": dict(Counter(a.get("pattern_type") or "unknown" for a in analyses)),
            "confidence_distribution": {
                band: distribution.get(band, 0) for band in ("high", "medium", "low")
            },
            "success_rate": _rate(successful, len(outcomes)),
            "recent_activity": len(self.repository.recent(RECENT_DAYS)),
            "session_distribution": dict(Counter(_session(a) for a in analyses)),
            "top_patterns": [
                {
                    "id": a.get("id"),
                    "pattern_type": a.get("pattern_type"),
                    "confidence_score": a.get("confidence_score"),
                }
                for a in top[:TOP_PATTERNS]
            ],
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    def get_success_rates(
        self,
        pattern_type: Optional[str] = None,
        time_range: str = DEFAULT_TIME_RANGE,
    ) -> dict:
        """Success rate of validated predictions.

        Args:
            pattern_type: Restrict to one pattern type (None = all).
            time_range: 7d, 30d or 90d; anything else falls back to 30d.

        Returns:
            Dict with the overall rate and breakdowns by pattern and confidence band.
        """
        days = TIME_RANGES.get(time_range, TIME_RANGES[DEFAULT_TIME_RANGE])
        outcomes = self.repository.outcomes(days=days)
        if pattern_type:
            outcomes = [
                o for o in outcomes
                if str(o.get("pattern_type", "")).lower() == pattern_type.lower()
            ]

        by_pattern: dict[str, dict] = defaultdict(lambda: {"total": 0, "successful": 0})
        by_confidence = {band: {"total": 0, "successful": 0} for band in ("high", "medium", "low")}
        for o in outcomes:
            success = bool(o.get("success"))
            for bucket in (
                by_pattern[o.get("pattern_type") or "unknown"],
                by_confidence[confidence_band(o.get("confidence_score"))],
            ):
                bucket["total"] += 1
                bucket["successful"] += int(success)

        for bucket in list(by_pattern.values()) + list(by_confidence.values()):
            bucket["success_rate"] = _rate(bucket["successful"], bucket["total"])

        successful = sum(1 for o in outcomes if o.get("success"))
        return {
            "overall_success_rate": _rate(successful, len(outcomes)),
            "total_predictions": len(outcomes),
            "by_pattern": dict(by_pattern),
            "by_confidence": by_confidence if outcomes else {},
            "time_range": time_range if time_range in TIME_RANGES else DEFAULT_TIME_RANGE,
        }

    def get_pattern_clusters(self) -> dict:
        """Group analyses by pattern type; singletons are not clusters."""
        analyses = self.repository.all_analyses()
        if not analyses:
            return {"clusters": [], "message": "No charts available for clustering", "total_charts_clustered": 0}

        groups: dict[str, list[dict]] = defaultdict(list)
        for a in analyses:
            groups[a.get("pattern_type") or "unknown"].append(a)

        outcomes = self.repository.outcomes()
        clusters = []
        for pattern_type, members in groups.items():
            if len(members) < MIN_CLUSTER_SIZE:
                continue
            confidences = [m.get("confidence_score") or 0.0 for m in members]
            avg_confidence = sum(confidences) / len(confidences)
            member_ids = {m.get("id") for m in members}
            member_outcomes = [o for o in outcomes if o.get("chart_analysis_id") in member_ids]
            clusters.append({
                "cluster_name": f"{pattern_type} Cluster",
                "pattern_type": pattern_type,
                "size": len(members),
                "avg_confidence": round(avg_confidence, 4),
                "confidence_range": {"min": min(confidences), "max": max(confidences)},
                "confidence_threshold": round(max(MEDIUM_CONFIDENCE, avg_confidence - 0.10), 4),
                "success_rate": _rate(
                    sum(1 for o in member_outcomes if o.get("success")), len(member_outcomes),
                ),
                "member_ids": sorted(i for i in member_ids if i),
            })

        clusters.sort(key=lambda c: c["size"], reverse=True)
        clustered = sum(c["size"] for c in clusters)
        log.info("accuracy.clusters", clusters=len(clusters), charts=clustered)
        return {
            "clusters": clusters,
            "message": f"Generated {len(clusters)} pattern clusters",
            "total_charts_clustered": clustered,
        }

    def get_confidence_calibration(self, days: int = 90) -> dict:
        """Compare predicted confidence vs actual success rate.

        Buckets predictions by confidence level (0-25%, 25-50%, 50-75%, 75-100%)
        and compares to actual success rates to detect over/under-confidence.
        """
        outcomes = self.repository.outcomes(days=days)
        if not outcomes:
            return {"days": days, "total_outcomes": 0, "message": "Insufficient data for calibration."}

        buckets = {
            name: {"predicted_sum": 0.0, "successes": 0, "total": 0}
            for name in ("0-25%", "25-50%", "50-75%", "75-100%")
        }
        for o in outcomes:
            conf = (o.get("confidence_score") or 0.0) * 100
            if conf < 25:
                bucket = "0-25%"
            elif conf < 50:
                bucket = "25-50%"
            elif conf < 75:
                bucket = "50-75%"
            else:
                bucket = "75-100%"

            buckets[bucket]["total"] += 1
            buckets[bucket]["predicted_sum"] += conf
            if o.get("success"):
                buckets[bucket]["successes"] += 1

        calibration = {}
        for name, data in buckets.items():
            if not data["total"]:
                continue
            predicted = round(data["predicted_sum"] / data["total"], 1)
            actual = round(data["successes"] / data["total"] * 100, 1)
            calibration[name] = {
                "predicted_confidence": predicted,
                "actual_success_rate": actual,
                "sample_size": data["total"],
                "calibration_gap": round(predicted - actual, 1),
                "assessment": (
                    "well_calibrated" if abs(predicted - actual) < 10
                    else "overconfident" if predicted > actual
                    else "underconfident"
                ),
            }

        return {
            "days": days,
            "total_outcomes": len(outcomes),
            "buckets": calibration,
        }


# ── Singleton ──

_engine: Optional[AccuracyEngine] = None


def get_accuracy_engine() -> AccuracyEngine:
    global _engine
    if _engine is None:
        _engine = AccuracyEngine()
    return _engine
