"""
PatternCast — Tracing

Stage timing for the prediction pipeline. Every span is logged through
structlog; when LangSmith tracing is enabled the span is also recorded as a
LangSmith run so the Gemini calls made inside it nest under the stage.
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from typing import Optional

import structlog

from patterncast.config import get_settings

logger = structlog.get_logger(__name__)

SLOW_SPAN_SECONDS = 5.0


def is_tracing_enabled() -> bool:
    settings = get_settings()
    return settings.langsmith_tracing or os.getenv("LANGCHAIN_TRACING_V2", "").lower() == "true"


def configure_langsmith() -> None:
    """Export LangSmith settings into the environment LangChain reads."""
    settings = get_settings()
    if not settings.langsmith_tracing:
        return
    os.environ["LANGCHAIN_TRACING_V2"] = "true"
    os.environ["LANGCHAIN_PROJECT"] = settings.langsmith_project
    if settings.langsmith_api_key:
        os.environ["LANGCHAIN_API_KEY"] = settings.langsmith_api_key
    logger.info("langsmith_configured", project=settings.langsmith_project)


@contextmanager
def trace_span(
    name: str,
    run_type: str = "chain",
    metadata: Optional[dict] = None,
):
    """Time a block; open a LangSmith run around it when tracing is on.

    Usage:
        with trace_span("ensemble.scoring_similarity"):
            similar = rank_similar(current, history)
    """
    start = time.perf_counter()
    try:
        if is_tracing_enabled():
            from langsmith import trace as ls_trace

            with ls_trace(name=name, run_type=run_type, metadata=metadata or {}) as run:
                yield run
        else:
            yield None
    finally:
        elapsed = time.perf_counter() - start
        logger.debug("trace_span", span=name, elapsed_ms=round(elapsed * 1000, 2))
        if elapsed > SLOW_SPAN_SECONDS:
            logger.warning("trace_span_slow", span=name, elapsed_s=round(elapsed, 2))
