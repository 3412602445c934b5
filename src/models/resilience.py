"""Models describing circuit-breaker and rate-limiter state.

These are read-only snapshots: the live state lives inside
:class:`~src.services.resilience.circuit_breaker.CircuitBreaker` and the
shared cache store.  Snapshots are what telemetry listeners, the CLI and
response headers consume.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CircuitState(str, Enum):  # noqa: UP042 — StrEnum requires Python 3.11+
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitEvent(str, Enum):  # noqa: UP042 — StrEnum requires Python 3.11+
    """Events broadcast to circuit-breaker listeners."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    STATE_CHANGE = "state_change"


class CircuitMetrics(BaseModel):
    """Point-in-time counters for one breaker."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    failures: int = Field(default=0, ge=0, description="Failures in the rolling window.")
    successes: int = Field(default=0, ge=0, description="Successes in the rolling window.")
    requests: int = Field(default=0, ge=0, description="Requests in the rolling window.")
    consecutive_successes: int = Field(default=0, ge=0)
    half_open_trials: int = Field(default=0, ge=0)
    total_requests: int = Field(default=0, ge=0)
    total_failures: int = Field(default=0, ge=0)
    total_rejections: int = Field(default=0, ge=0)
    last_state_change: float = Field(description="Clock reading of the last transition.")
    retry_after_seconds: float = Field(
        default=0.0, ge=0.0, description="Seconds until an OPEN breaker admits a trial."
    )


class RateLimitDecision(BaseModel):
    """Outcome of a rate-limit check for one request."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    limit: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_after: int = Field(default=0, ge=0, description="Seconds until the window resets.")
    retry_after: int | None = Field(default=None, description="Seconds to wait when denied.")

    def as_headers(self) -> dict[str, str]:
        """Return the conventional ``X-RateLimit-*`` headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_after),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers
