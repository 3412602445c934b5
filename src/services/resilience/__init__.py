"""Resilience layer: circuit breakers and per-user rate limiting."""

from src.services.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from src.services.resilience.rate_limiter import RateLimiter

__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "RateLimiter"]
