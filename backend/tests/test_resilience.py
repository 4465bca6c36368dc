"""
PatternCast — Resilience & Configuration Tests

Tests for:
- Circuit breaker state machine and registry
- Retry decorator (backoff, exhaustion, non-retryable errors)
- Settings parsing
- Trace spans with tracing disabled
"""

import time
from unittest.mock import patch

import pytest


def _fail():
    raise ConnectionError("refused")


# ════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ════════════════════════════════════════════════


class TestCircuitBreaker:

    def test_starts_closed(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        assert CircuitBreaker("svc_closed").state == CircuitState.CLOSED

    def test_opens_after_threshold(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        cb = CircuitBreaker("svc_open", failure_threshold=3, recovery_timeout=60)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                cb.call(_fail)
        assert cb.state == CircuitState.CLOSED
        with pytest.raises(ConnectionError):
            cb.call(_fail)
        assert cb.state == CircuitState.OPEN

    def test_success_resets_failure_count(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        cb = CircuitBreaker("svc_reset", failure_threshold=2)
        with pytest.raises(ConnectionError):
            cb.call(_fail)
        assert cb.call(lambda: "ok") == "ok"
        with pytest.raises(ConnectionError):
            cb.call(_fail)
        assert cb.state == CircuitState.CLOSED

    def test_open_circuit_rejects_without_calling(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
        cb = CircuitBreaker("svc_reject", failure_threshold=1, recovery_timeout=60)
        with pytest.raises(ConnectionError):
            cb.call(_fail)

        called = []
        with pytest.raises(CircuitOpenError) as exc_info:
            cb.call(lambda: called.append(1))
        assert called == []
        assert 0 < exc_info.value.retry_after <= 60

    def test_half_open_probe_closes_on_success(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        cb = CircuitBreaker("svc_probe_ok", failure_threshold=1, recovery_timeout=0.05)
        with pytest.raises(ConnectionError):
            cb.call(_fail)
        time.sleep(0.1)
        assert cb.state == CircuitState.HALF_OPEN
        cb.call(lambda: None)
        assert cb.state == CircuitState.CLOSED

    def test_half_open_probe_failure_reopens(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        cb = CircuitBreaker("svc_probe_fail", failure_threshold=3, recovery_timeout=0.05)
        for _ in range(3):
            with pytest.raises(ConnectionError):
                cb.call(_fail)
        time.sleep(0.1)
        assert cb.state == CircuitState.HALF_OPEN
        with pytest.raises(ConnectionError):
            cb.call(_fail)
        assert cb.state == CircuitState.OPEN

    def test_uncounted_exceptions_pass_through(self):
        from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitState
        cb = CircuitBreaker("svc_uncounted", failure_threshold=1, counted_exceptions=(ConnectionError,))
        with pytest.raises(ValueError):
            cb.call(lambda: int("x"))
        assert cb.state == CircuitState.CLOSED

    def test_registry_returns_same_instance(self):
        from patterncast.utils.circuit_breaker import get_all_breaker_states, get_breaker
        first = get_breaker("svc_registry", failure_threshold=2)
        assert get_breaker("svc_registry") is first
        assert get_all_breaker_states()["svc_registry"] == "CLOSED"


# ════════════════════════════════════════════════
#  RETRY
# ════════════════════════════════════════════════


class TestRetryDecorator:

    def test_no_retry_on_success(self):
        from patterncast.utils.retry import with_retry
        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        def succeed():
            calls.append(1)
            return "ok"

        assert succeed() == "ok"
        assert len(calls) == 1

    def test_retry_on_connection_error(self):
        from patterncast.utils.retry import with_retry
        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("connection refused")
            return "recovered"

        assert flaky() == "recovered"
        assert len(calls) == 3

    def test_exhaustion_raises_original(self):
        from patterncast.utils.retry import with_retry

        @with_retry(max_attempts=2, base_delay=0.01)
        def always_fail():
            raise TimeoutError("timed out")

        with pytest.raises(TimeoutError, match="timed out"):
            always_fail()

    def test_non_retryable_raises_immediately(self):
        from patterncast.utils.retry import with_retry
        calls = []

        @with_retry(max_attempts=3, base_delay=0.01)
        def bad_input():
            calls.append(1)
            raise ValueError("bad value")

        with pytest.raises(ValueError):
            bad_input()
        assert len(calls) == 1

    def test_custom_retryable_exceptions(self):
        from patterncast.utils.retry import with_retry
        calls = []

        @with_retry(max_attempts=3, base_delay=0.01, retryable_exceptions=(KeyError,))
        def lookup():
            calls.append(1)
            if len(calls) < 2:
                raise KeyError("missing")
            return "found"

        assert lookup() == "found"

    def test_backoff_delay(self):
        from patterncast.utils.retry import compute_delay
        assert compute_delay(1, 0.2, 5.0, 2.0, jitter=False) == pytest.approx(0.2)
        assert compute_delay(3, 0.2, 5.0, 2.0, jitter=False) == pytest.approx(0.8)

    def test_max_delay_cap(self):
        from patterncast.utils.retry import compute_delay
        assert compute_delay(10, 1.0, 5.0, 2.0, jitter=False) == 5.0

    def test_jitter_bounds(self):
        from patterncast.utils.retry import compute_delay
        for _ in range(20):
            assert 0.1 <= compute_delay(1, 0.2, 5.0, 2.0, jitter=True) <= 0.3


# ════════════════════════════════════════════════
#  SETTINGS & TRACING
# ════════════════════════════════════════════════


class TestSettings:

    def test_defaults(self):
        from patterncast.config import Settings
        s = Settings(_env_file=None)
        assert s.vision_model == "gemini-2.5-flash"
        assert s.prediction_timeframe_minutes == 30
        assert s.default_price == 16000.0

    def test_cors_origin_list_empty_filtered(self):
        from patterncast.config import Settings
        s = Settings(_env_file=None, cors_origins="https://a.com,,, https://b.com,")
        assert s.cors_origin_list == ["https://a.com", "https://b.com"]

    def test_uses_postgres(self):
        from patterncast.config import Settings
        assert Settings(_env_file=None, database_url="").uses_postgres is False
        assert Settings(_env_file=None, database_url="postgresql://localhost/pc").uses_postgres is True

    def test_get_settings_is_cached(self):
        from patterncast.config import get_settings
        assert get_settings() is get_settings()


class TestTraceSpan:

    def test_span_without_tracing_yields_none(self):
        from patterncast import observability
        with patch.object(observability, "is_tracing_enabled", return_value=False):
            with observability.trace_span("unit.span") as run:
                assert run is None

    def test_span_propagates_errors(self):
        from patterncast import observability
        with patch.object(observability, "is_tracing_enabled", return_value=False):
            with pytest.raises(RuntimeError):
                with observability.trace_span("unit.failing"):
                    raise RuntimeError("boom")

    def test_configure_langsmith_noop_when_disabled(self, monkeypatch):
        from patterncast import observability
        from patterncast.config import Settings
        monkeypatch.delenv("LANGCHAIN_PROJECT", raising=False)
        settings = Settings(_env_file=None, langsmith_tracing=False)
        with patch.object(observability, "get_settings", return_value=settings):
            observability.configure_langsmith()
        import os
        assert "LANGCHAIN_PROJECT" not in os.environ
