"""
PatternCast — Multi-Timeframe Analysis Engine

Reads the same screenshot from the 5, 15 and 60 minute perspectives, takes
the first successful one as the primary observation, enriches it with the
synthesised indicators, regime and cross-timeframe alignment, and stores it
as a ``chart_analyses`` record.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from patterncast.db.chart_repository import ChartRepository
from patterncast.engines import indicator_engine, regime_engine, timeframe_engine
from patterncast.engines.vision_engine import SERVICE_NAME, VisionEngine, get_vision_engine
from patterncast.exceptions import UpstreamUnavailableError
from patterncast.models import AnalysisResult, ChartObservation
from patterncast.observability import trace_span

log = structlog.get_logger(__name__)

TIMEFRAMES = ("5min", "15min", "60min")


class AnalysisEngine:
    """Describe, enrich and persist one chart."""

    def __init__(
        self,
        vision: Optional[VisionEngine] = None,
        repository: Optional[ChartRepository] = None,
    ):
        self._vision = vision
        self.repository = repository or ChartRepository()

    @property
    def vision(self) -> VisionEngine:
        if self._vision is None:
            self._vision = get_vision_engine()
        return self._vision

    async def _describe(
        self,
        image_bytes: bytes,
        filename: str,
        timeframe: str,
        mime_type: str,
    ) -> Optional[ChartObservation]:
        try:
            return await asyncio.to_thread(
                self.vision.describe_chart, image_bytes, filename, timeframe, mime_type,
            )
        except UpstreamUnavailableError as exc:
            log.warning("analysis.timeframe_failed", timeframe=timeframe, reason=exc.reason)
            return None

    async def analyze(
        self,
        image_bytes: bytes,
        filename: str = "chart.png",
        mime_type: str = "image/png",
        persist: bool = True,
    ) -> AnalysisResult:
        """Analyze a chart from every timeframe perspective.

        Raises:
            UpstreamUnavailableError: no perspective could be described.
        """
        with trace_span("analysis.describing", metadata={"filename": filename}):
            described = await asyncio.gather(*(
                self._describe(image_bytes, filename, tf, mime_type) for tf in TIMEFRAMES
            ))
        by_timeframe = {tf: obs for tf, obs in zip(TIMEFRAMES, described) if obs is not None}
        if not by_timeframe:
            raise UpstreamUnavailableError(SERVICE_NAME, "no_timeframe_described")

        primary = next(by_timeframe[tf] for tf in TIMEFRAMES if tf in by_timeframe)
        labels = [
            by_timeframe[tf].sentiment_label if tf in by_timeframe else primary.sentiment_label
            for tf in TIMEFRAMES
        ]
        alignment = timeframe_engine.analyze(*labels)

        indicators = indicator_engine.synthesize(
            primary.price_direction,
            primary.momentum,
            primary.volatility,
            primary.volume_profile,
            primary.current_price,
            primary.extended,
        )
        regime = regime_engine.classify(
            primary.price_direction,
            primary.momentum,
            primary.volatility,
            indicators.rsi,
        )
        enriched = primary.enrich(indicators, regime).model_copy(
            update={"timeframe_alignment": alignment},
        )

        stored = False
        if persist:
            try:
                saved = await asyncio.to_thread(self.repository.save_analysis, enriched.to_record())
                enriched = enriched.model_copy(update={"id": saved["id"]})
                stored = True
            except Exception as exc:
                log.error("analysis.persist_failed", filename=filename, error=str(exc))

        log.info(
            "analysis.completed",
            filename=filename,
            timeframes=sorted(by_timeframe),
            direction=enriched.price_direction,
            alignment=alignment.alignment_score,
            stored=stored,
        )
        return AnalysisResult(
            analysis=enriched,
            technical_indicators=indicators,
            market_regime=regime,
            timeframe_alignment=alignment,
            timeframe_analyses=by_timeframe,
            stored=stored,
        )


# ── Singleton ──

_engine: Optional[AnalysisEngine] = None


def get_analysis_engine() -> AnalysisEngine:
    global _engine
    if _engine is None:
        _engine = AnalysisEngine()
    return _engine
