"""
PatternCast — FastAPI Application Entry Point

The central API server. Analysis, prediction and analytics endpoints are
mounted here.
"""

import time as _time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from patterncast.config import get_settings
from patterncast.routes import analytics_router, health_router, prediction_router

log = structlog.get_logger("PatternCast.startup")

# Track server start time for uptime calculations
APP_START_TIME: float = _time.monotonic()


def _validate_config(settings) -> None:
    """Warn on missing critical configuration at startup."""
    checks = {
        "google_api_key": "Google Gemini (chart analysis and the AI vote will not work)",
        "database_url": "PostgreSQL (records kept in process memory only)",
    }
    for attr, description in checks.items():
        if not getattr(settings, attr, ""):
            log.warning("config.missing_key", key=attr, impact=description)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    log.info(
        "startup",
        env=settings.app_env,
        store="postgres" if settings.uses_postgres else "memory",
        vision_model=settings.vision_model,
    )

    # ── Config validation ──
    _validate_config(settings)

    # ── LangSmith ──
    from patterncast.observability import configure_langsmith
    configure_langsmith()

    # ── Record store: ensure schema ──
    from patterncast.db.record_store import PostgresRecordStore, get_record_store
    store = get_record_store()
    if isinstance(store, PostgresRecordStore):
        if store.ensure_tables():
            log.info("record_store.ready", backend=store.name)
        else:
            log.warning("record_store.unavailable", detail="requests will fail until the database is reachable")

    yield

    # ── Shutdown ──
    from patterncast.engines.ensemble_engine import flush_pending_writes
    await flush_pending_writes()
    store.close()
    log.info("shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="PatternCast",
        description="""# PatternCast API

Chart-pattern screenshots in, ensemble trading predictions out.

## Features
- **Chart Analysis** — Gemini reads a screenshot from 5/15/60 minute perspectives
- **Ensemble Prediction** — pattern similarity, weekday history, indicators and an AI vote
- **Outcome Feedback** — validated outcomes feed future similarity votes
- **Analytics** — success rates, clusters and confidence calibration
""",
        version="1.0.0",
        debug=settings.app_debug,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Service health and readiness checks"},
            {"name": "Prediction", "description": "Chart analysis, prediction, similarity and outcomes"},
            {"name": "Analytics", "description": "Dashboard, success rates, clusters and calibration"},
        ],
    )

    # ── Global Error Handlers ──
    from patterncast.error_handlers import register_error_handlers
    register_error_handlers(app)

    # ── CORS (configurable from settings) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Request Logging ──
    from patterncast.middleware.request_logger import RequestLoggerMiddleware
    app.add_middleware(RequestLoggerMiddleware)

    # ── GZip Response Compression ──
    from starlette.middleware.gzip import GZipMiddleware
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Routes (unversioned) ──
    app.include_router(health_router, tags=["Health"])

    # ── Routes (v1 API) ──
    API_V1 = "/v1/api"
    app.include_router(prediction_router, prefix=API_V1, tags=["Prediction"])
    app.include_router(analytics_router, prefix=API_V1, tags=["Analytics"])

    # ── API Version Header ──
    @app.middleware("http")
    async def add_api_version_header(request, call_next):
        response = await call_next(request)
        response.headers["X-API-Version"] = "v1"
        return response

    return app


app = create_app()
