"""
PatternCast — Circuit Breaker

Stops hammering the vision gateway once it keeps failing.

    CLOSED    → calls pass; consecutive failures are counted
    OPEN      → calls are rejected until ``recovery_timeout`` elapses
    HALF_OPEN → one probe call; success closes, failure re-opens

Only failures the caller classifies as transport problems should be fed to
the breaker; a malformed model answer is not an outage.
"""

from __future__ import annotations

import threading
import time
from enum import Enum, auto
from typing import Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitOpenError(Exception):
    """Raised instead of calling the service while the circuit is open."""

    def __init__(self, service: str, retry_after: float):
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit open for '{service}', retry after {retry_after:.0f}s")


class CircuitBreaker:
    """Thread-safe breaker for one external service."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        counted_exceptions: tuple[type[BaseException], ...] = (Exception,),
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counted_exceptions = counted_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and time.monotonic() - self._opened_at >= self.recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                log.info("circuit_breaker.half_open", service=self.service_name)
            return self._state

    def retry_after(self) -> float:
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    def call(self, func: Callable[[], T]) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: the circuit is open.
        """
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.service_name, self.retry_after())

        try:
            result = func()
        except self.counted_exceptions as exc:
            self._record_failure(exc)
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                log.info("circuit_breaker.closed", service=self.service_name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                log.warning(
                    "circuit_breaker.opened",
                    service=self.service_name,
                    failures=self._failure_count,
                    error=str(exc),
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = 0.0


# ────────────────────────────────────────────────
# Registry
# ────────────────────────────────────────────────

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(service_name: str, **kwargs) -> CircuitBreaker:
    """Get or create the breaker for ``service_name``."""
    with _registry_lock:
        if service_name not in _breakers:
            _breakers[service_name] = CircuitBreaker(service_name, **kwargs)
        return _breakers[service_name]


def get_all_breaker_states() -> dict[str, str]:
    with _registry_lock:
        breakers = list(_breakers.items())
    return {name: cb.state.name for name, cb in breakers}
