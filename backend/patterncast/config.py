"""
PatternCast — Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    app_debug: bool = True

    # ── Google Gemini (vision gateway) ──
    google_api_key: str = ""
    vision_model: str = "gemini-2.5-flash"
    vision_temperature: float = 0.1
    vision_max_output_tokens: int = 1500
    vision_timeout_seconds: float = 30.0
    vision_breaker_threshold: int = 5
    vision_breaker_recovery_seconds: float = 60.0

    # ── LangSmith ──
    langsmith_api_key: str = ""
    langsmith_project: str = "PatternCast"
    langsmith_tracing: bool = False

    # ── Record store ──
    # Empty → in-process store (development / tests).
    database_url: str = ""

    # ── Prediction ──
    default_price: float = 16000.0  # placeholder when the chart shows no price
    prediction_timeframe_minutes: int = 30

    # ── CORS ──
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def uses_postgres(self) -> bool:
        return bool(self.database_url)


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance — created once, reused everywhere."""
    return Settings()
