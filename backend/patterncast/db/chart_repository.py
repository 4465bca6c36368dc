"""
PatternCast — Chart Repository

Domain queries over the record store: historical analyses with known
outcomes, day-of-week cohorts, id sets, recent activity, and the
append-only outcome attach.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from patterncast.db.record_store import (
    CHART_ANALYSES,
    PREDICTION_FEEDBACK,
    PREDICTION_OUTCOMES,
    Filter,
    RecordStore,
    get_record_store,
)
from patterncast.exceptions import OutcomeAlreadyRecordedError, RecordNotFoundError

log = structlog.get_logger(__name__)

MIN_HISTORY_CONFIDENCE = 0.65
HISTORY_LIMIT = 500
DAY_COHORT_LIMIT = 100

KNOWN_OUTCOME = Filter("actual_outcome", "not_null")


class ChartRepository:
    """Read/write access to stored chart analyses and prediction feedback."""

    def __init__(self, store: Optional[RecordStore] = None):
        self._store = store

    @property
    def store(self) -> RecordStore:
        return self._store or get_record_store()

    # ── Reads ──

    def historical_with_outcomes(
        self,
        min_confidence: float = MIN_HISTORY_CONFIDENCE,
        limit: int = HISTORY_LIMIT,
    ) -> list[dict]:
        """Validated analyses above ``min_confidence``, newest first."""
        return self.store.query(
            CHART_ANALYSES,
            [KNOWN_OUTCOME, Filter("confidence_score", "gte", min_confidence)],
            order_by="created_at",
            descending=True,
            limit=limit,
        )

    def by_day_of_week(self, day: str, limit: int = DAY_COHORT_LIMIT) -> list[dict]:
        """Validated analyses recorded on the same weekday."""
        if not day:
            return []
        return self.store.query(
            CHART_ANALYSES,
            [Filter("day_of_week", "eq", day), KNOWN_OUTCOME],
            order_by="created_at",
            descending=True,
            limit=limit,
        )

    def by_ids(self, ids: list[str]) -> list[dict]:
        if not ids:
            return []
        return self.store.query(CHART_ANALYSES, [Filter("id", "in", list(ids))], order_by=None)

    def recent(self, days: int = 7, table: str = CHART_ANALYSES) -> list[dict]:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        return self.store.query(table, [Filter("created_at", "gte", cutoff)])

    def all_analyses(self) -> list[dict]:
        return self.store.query(CHART_ANALYSES)

    def get_analysis(self, record_id: str) -> dict:
        record = self.store.get(CHART_ANALYSES, record_id)
        if record is None:
            raise RecordNotFoundError(CHART_ANALYSES, record_id)
        return record

    def outcomes(self, days: Optional[int] = None) -> list[dict]:
        if days is None:
            return self.store.query(PREDICTION_OUTCOMES)
        return self.recent(days, table=PREDICTION_OUTCOMES)

    # ── Writes ──

    def save_analysis(self, record: dict) -> dict:
        return self.store.insert(CHART_ANALYSES, record)

    def save_feedback(self, record: dict) -> dict:
        return self.store.insert(PREDICTION_FEEDBACK, record)

    def save_outcome(self, record: dict) -> dict:
        return self.store.insert(PREDICTION_OUTCOMES, record)

    def attach_outcome(self, record_id: str, outcome: str) -> dict:
        """Attach the validated direction to an analysis, once.

        Raises:
            RecordNotFoundError: unknown id.
            OutcomeAlreadyRecordedError: the analysis already has an outcome.
        """
        updated = self.store.update(
            CHART_ANALYSES,
            record_id,
            {
                "actual_outcome": outcome,
                "validated_at": datetime.now(timezone.utc).isoformat(),
            },
            only_if_null="actual_outcome",
        )
        if updated is None:
            existing = self.get_analysis(record_id).get("actual_outcome")
            raise OutcomeAlreadyRecordedError(record_id, str(existing))
        log.info("chart_repository.outcome_attached", id=record_id, outcome=outcome)
        return updated
