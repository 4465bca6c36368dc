"""
PatternCast — API Routes

All HTTP endpoints. Thin layer — delegates to the engines.
"""

from __future__ import annotations

import base64
import binascii
import time as _time

from fastapi import APIRouter, Query

from patterncast.config import get_settings
from patterncast.db.chart_repository import ChartRepository
from patterncast.db.record_store import get_record_store
from patterncast.engines.accuracy_engine import TIME_RANGES, get_accuracy_engine
from patterncast.engines.analysis_engine import get_analysis_engine
from patterncast.engines.ensemble_engine import get_ensemble_engine, record_outcome
from patterncast.engines.outcome_tracker import get_outcome_tracker
from patterncast.engines.similarity_engine import rank_similar
from patterncast.exceptions import InvalidImageError
from patterncast.models import (
    AnalysisResult,
    ChartUploadRequest,
    HealthCheck,
    OutcomeRequest,
    PredictionResult,
    SimilarityRequest,
)
from patterncast.utils.circuit_breaker import get_all_breaker_states


def decode_image(payload: str) -> bytes:
    """Decode a base64 upload, tolerating a ``data:image/...;base64,`` prefix."""
    data = payload.strip()
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        image = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError("Image is not valid base64") from exc
    if not image:
        raise InvalidImageError("Image is empty")
    return image


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

health_router = APIRouter()


@health_router.get("/health", response_model=HealthCheck)
async def health_check():
    """Application health with record store, vision gateway and breaker status."""
    settings = get_settings()
    services = {}

    t0 = _time.perf_counter()
    store = get_record_store()
    services["record_store"] = {
        "status": "ok" if store.available else "unavailable",
        "backend": store.name,
        "latency_ms": round((_time.perf_counter() - t0) * 1000, 1),
    }

    services["vision_gateway"] = {"status": "ok" if settings.google_api_key else "no_api_key"}
    services["circuit_breakers"] = get_all_breaker_states()

    statuses = [s.get("status") for s in services.values() if "status" in s]
    overall = "degraded" if "unavailable" in statuses else "ok"

    from patterncast.main import APP_START_TIME
    return HealthCheck(
        status=overall,
        environment=settings.app_env,
        uptime_seconds=round(_time.monotonic() - APP_START_TIME, 1),
        services=services,
    )


# ──────────────────────────────────────────────
# Analysis & Prediction
# ──────────────────────────────────────────────

prediction_router = APIRouter()


@prediction_router.post("/analyze", response_model=AnalysisResult)
async def analyze_chart(body: ChartUploadRequest):
    """Multi-timeframe analysis of an uploaded chart; the result is stored."""
    image = decode_image(body.image)
    return await get_analysis_engine().analyze(image, body.filename, body.mime_type)


@prediction_router.post("/predict", response_model=PredictionResult)
async def predict_chart(body: ChartUploadRequest):
    """Ensemble prediction for an uploaded chart."""
    image = decode_image(body.image)
    return await get_ensemble_engine().predict(image, body.filename, body.mime_type)


@prediction_router.post("/similarity")
def compare_patterns(body: SimilarityRequest):
    """Score a stored analysis against a set of other stored analyses."""
    repository = ChartRepository()
    source = repository.get_analysis(body.source_id)
    target_ids = [i for i in dict.fromkeys(body.target_ids) if i != body.source_id]
    targets = repository.by_ids(target_ids)
    found = {t.get("id") for t in targets}

    ranked = rank_similar(source, targets, threshold=0.0, limit=body.limit)
    return {
        "source_id": body.source_id,
        "similarities": [
            {
                "target_id": r.get("id"),
                "similarity_score": r["similarity_score"],
                "pattern_type": r.get("pattern_type"),
                "outcome": record_outcome(r) or None,
            }
            for r in ranked
        ],
        "total_compared": len(targets),
        "missing_ids": [i for i in target_ids if i not in found],
    }


@prediction_router.post("/outcomes", status_code=201)
def record_prediction_outcome(body: OutcomeRequest):
    """Record the validated outcome of a stored analysis (once)."""
    outcome = get_outcome_tracker().record_outcome(body)
    return {"success": True, "outcome": outcome}


# ──────────────────────────────────────────────
# Analytics
# ──────────────────────────────────────────────

analytics_router = APIRouter(prefix="/analytics")


@analytics_router.get("/dashboard")
def analytics_dashboard():
    return get_accuracy_engine().get_dashboard()


@analytics_router.get("/success-rates")
def success_rates(
    pattern_type: str = Query(None, description="Restrict to one pattern type"),
    time_range: str = Query("30d", description=f"One of {', '.join(TIME_RANGES)}"),
):
    return get_accuracy_engine().get_success_rates(pattern_type, time_range)


@analytics_router.get("/clusters")
def pattern_clusters():
    return get_accuracy_engine().get_pattern_clusters()


@analytics_router.get("/calibration")
def confidence_calibration(days: int = Query(90, ge=1, le=365)):
    return get_accuracy_engine().get_confidence_calibration(days)
