# Shared utilities: circuit breaker, retry
from patterncast.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, get_breaker
from patterncast.utils.retry import with_retry

__all__ = ["CircuitBreaker", "CircuitOpenError", "get_breaker", "with_retry"]
