"""
PatternCast — Prediction Outcome Tracker

Closes the feedback loop: once the real move of a charted setup is known it
is attached to the stored analysis (so the analysis starts counting as
history for the similarity votes) and a ``prediction_outcomes`` row is
written for the success-rate analytics.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from patterncast.db.chart_repository import ChartRepository
from patterncast.models import OutcomeRequest, normalize_confidence

log = structlog.get_logger(__name__)


class OutcomeTracker:
    """Records validated outcomes against stored analyses.

    Usage::

        tracker = get_outcome_tracker()
        row = tracker.record_outcome(OutcomeRequest(
            chart_analysis_id="...", actual_direction="bullish",
        ))
    """

    def __init__(self, repository: Optional[ChartRepository] = None):
        self.repository = repository or ChartRepository()

    def record_outcome(self, request: OutcomeRequest) -> dict:
        """Attach the outcome and write the evaluation row.

        The prediction defaults to the analysis' own direction label and the
        confidence to its stored confidence when the caller omits them.

        Raises:
            RecordNotFoundError: unknown analysis id.
            OutcomeAlreadyRecordedError: the analysis was already validated.
        """
        analysis = self.repository.get_analysis(request.chart_analysis_id)
        actual = request.actual_direction.value
        predicted = (
            request.predicted_direction.value
            if request.predicted_direction is not None
            else str(analysis.get("price_direction") or "neutral").lower()
        )
        confidence = (
            request.confidence_score
            if request.confidence_score is not None
            else analysis.get("confidence_score")
        )

        self.repository.attach_outcome(request.chart_analysis_id, actual)

        row = self.repository.save_outcome({
            "chart_analysis_id": request.chart_analysis_id,
            "pattern_type": analysis.get("pattern_type") or "unknown",
            "predicted_direction": predicted,
            "actual_direction": actual,
            "success": predicted == actual,
            "confidence_score": normalize_confidence(confidence, default=0.0),
            "price_target": request.price_target,
            "actual_price": request.actual_price,
            "time_horizon_hours": request.time_horizon_hours,
            "outcome_notes": request.notes,
            "validated_at": datetime.now(timezone.utc).isoformat(),
        })
        log.info(
            "outcome_tracker.recorded",
            analysis_id=request.chart_analysis_id,
            predicted=predicted,
            actual=actual,
            success=row["success"],
        )
        return row


# ── Singleton ──

_tracker: Optional[OutcomeTracker] = None


def get_outcome_tracker() -> OutcomeTracker:
    global _tracker
    if _tracker is None:
        _tracker = OutcomeTracker()
    return _tracker
