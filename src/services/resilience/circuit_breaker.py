"""Circuit breaker for calls to external dependencies.

# ─── HOW THE BREAKER WORKS ─────────────────────────────────────────────
#
#            failures >= threshold AND requests >= volume (rolling window)
#   CLOSED ─────────────────────────────────────────────────────────→ OPEN
#     ↑                                                               │
#     │ success_threshold consecutive                  cooldown       │
#     │ trial successes                                elapsed        │
#     │                                                (next call)    ↓
#     └──────────────────────────── HALF_OPEN ←───────────────────────┘
#                                      │
#                                      └── any trial failure, or trials
#                                          exhausted ──────────→ OPEN
#
# OPEN rejects calls without executing them: the caller gets its fallback
# (if it passed one) or a CircuitOpenError carrying ``retry_after``.
# HALF_OPEN admits at most ``half_open_limit`` trial calls.
#
# Ignored exceptions (caller mistakes) record no outcome and free their
# trial slot.
#
# Every call runs under ``asyncio.wait_for``; a timeout is recorded as a
# failure and surfaces as ProviderTimeoutError.
#
# State lives behind a threading.Lock that is held only for the short
# bookkeeping before and after the awaited call, never across it.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from src.config.settings import CircuitBreakerConfig
from src.models.resilience import CircuitEvent, CircuitMetrics, CircuitState
from src.utils.errors import CircuitOpenError, InvalidRequestError, ProviderTimeoutError

logger = structlog.get_logger(logger_name=__name__)

_T = TypeVar("_T")

# listener(service_name, event, metrics)
CircuitListener = Callable[[str, CircuitEvent, CircuitMetrics], Any]

# Caller mistakes say nothing about the health of the dependency.
_DEFAULT_IGNORED: tuple[type[BaseException], ...] = (InvalidRequestError,)


class CircuitBreaker:
    """Protects one external dependency.

    Parameters
    ----------
    name:
        Service name used in logs, metrics and :class:`CircuitOpenError`.
    config:
        Thresholds; defaults to :class:`CircuitBreakerConfig` defaults.
    clock:
        Monotonic seconds source.  Injected by tests to step time.
    ignored_exceptions:
        Exception types that pass through without being recorded as either
        a success or a failure.  A half-open trial slot they used is freed.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        ignored_exceptions: tuple[type[BaseException], ...] = _DEFAULT_IGNORED,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._ignored = ignored_exceptions
        self._lock = threading.Lock()
        self._listeners: list[CircuitListener] = []

        self._state = CircuitState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._consecutive_successes = 0
        self._half_open_trials = 0
        self._half_open_in_flight = 0
        self._opened_at = 0.0
        self._last_state_change = clock()
        self._total_requests = 0
        self._total_failures = 0
        self._total_rejections = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(
        self,
        operation: Callable[[], Awaitable[_T]],
        *,
        fallback: Callable[[], Awaitable[_T]] | None = None,
        timeout: float | None = None,
    ) -> _T:
        """Execute *operation* through the breaker.

        Parameters
        ----------
        operation:
            Zero-argument callable returning an awaitable.  A callable
            rather than a coroutine object, so a rejected call never
            creates an un-awaited coroutine.
        fallback:
            Awaited instead of raising when the breaker rejects the call.
        timeout:
            Per-call timeout in seconds; defaults to
            ``config.call_timeout_seconds``.

        Raises
        ------
        CircuitOpenError
            The breaker is open (or half-open with no trial slots) and no
            fallback was given.
        ProviderTimeoutError
            The operation exceeded its timeout.
        """
        with self._lock:
            admitted, events = self._admit()
            retry_after = self._retry_after_locked()
        self._emit(events)

        if not admitted:
            if fallback is not None:
                logger.debug("circuit_fallback_used", service=self._name)
                return await fallback()
            raise CircuitOpenError(self._name, retry_after=retry_after)

        limit = timeout if timeout is not None else self._config.call_timeout_seconds
        try:
            result = await asyncio.wait_for(operation(), timeout=limit)
        except asyncio.TimeoutError as exc:
            self._record(success=False, timed_out=True)
            raise ProviderTimeoutError(
                message=f"Call timed out after {limit:g}s",
                provider_name=self._name,
            ) from exc
        except asyncio.CancelledError:
            self._release_trial()
            raise
        except self._ignored:
            self._release_trial()
            raise
        except Exception:
            self._record(success=False)
            raise

        self._record(success=True)
        return result

    def add_listener(self, listener: CircuitListener) -> None:
        """Register a sync callback invoked for every outcome and transition."""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: CircuitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def metrics(self) -> CircuitMetrics:
        """Return a snapshot of the breaker's counters."""
        with self._lock:
            return self._metrics_locked()

    def status_message(self) -> str:
        """Return a short human-readable description of the breaker state."""
        with self._lock:
            state = self._state
            retry_after = self._retry_after_locked()
        if state is CircuitState.OPEN:
            return f"Service temporarily unavailable. Retry in {max(1, round(retry_after))}s"
        if state is CircuitState.HALF_OPEN:
            return "Service is recovering"
        return "Service is operating normally"

    def reset(self) -> None:
        """Return to CLOSED and clear all counters."""
        with self._lock:
            events = self._transition_locked(CircuitState.CLOSED)
            self._total_requests = 0
            self._total_failures = 0
            self._total_rejections = 0
        self._emit(events)
        logger.info("circuit_reset", service=self._name)

    def force_open(self) -> None:
        """Trip the breaker manually (e.g. during a known provider outage)."""
        with self._lock:
            events = self._transition_locked(CircuitState.OPEN)
        self._emit(events)

    def force_close(self) -> None:
        """Close the breaker manually, keeping lifetime totals."""
        with self._lock:
            events = self._transition_locked(CircuitState.CLOSED)
        self._emit(events)

    # ------------------------------------------------------------------
    # Bookkeeping (callers hold self._lock for *_locked methods)
    # ------------------------------------------------------------------

    def _admit(self) -> tuple[bool, list[CircuitEvent]]:
        events: list[CircuitEvent] = []
        now = self._clock()
        if self._state is CircuitState.OPEN:
            if now - self._opened_at >= self._config.open_timeout_ms / 1000:
                events.extend(self._transition_locked(CircuitState.HALF_OPEN))
            else:
                self._total_rejections += 1
                return False, [*events, CircuitEvent.REJECTED]

        if self._state is CircuitState.HALF_OPEN:
            if self._half_open_trials >= self._config.half_open_limit:
                self._total_rejections += 1
                return False, [*events, CircuitEvent.REJECTED]
            self._half_open_trials += 1
            self._half_open_in_flight += 1

        self._total_requests += 1
        return True, events

    def _record(self, success: bool, timed_out: bool = False) -> None:
        with self._lock:
            now = self._clock()
            self._outcomes.append((now, success))
            self._prune_locked(now)
            was_trial = self._state is CircuitState.HALF_OPEN and self._half_open_in_flight > 0
            if was_trial:
                self._half_open_in_flight -= 1

            events: list[CircuitEvent] = []
            if success:
                events.append(CircuitEvent.SUCCESS)
                events.extend(self._on_success_locked())
            else:
                self._total_failures += 1
                events.append(CircuitEvent.TIMEOUT if timed_out else CircuitEvent.FAILURE)
                events.extend(self._on_failure_locked())
        self._emit(events)

    def _on_success_locked(self) -> list[CircuitEvent]:
        if self._state is not CircuitState.HALF_OPEN:
            return []
        self._consecutive_successes += 1
        if self._consecutive_successes >= self._config.success_threshold:
            return self._transition_locked(CircuitState.CLOSED)
        return self._check_trials_exhausted_locked()

    def _on_failure_locked(self) -> list[CircuitEvent]:
        if self._state is CircuitState.HALF_OPEN:
            return self._transition_locked(CircuitState.OPEN)
        if self._state is CircuitState.CLOSED:
            failures = sum(1 for _, ok in self._outcomes if not ok)
            if (
                failures >= self._config.failure_threshold
                and len(self._outcomes) >= self._config.volume_threshold
            ):
                return self._transition_locked(CircuitState.OPEN)
        return []

    def _check_trials_exhausted_locked(self) -> list[CircuitEvent]:
        if (
            self._state is CircuitState.HALF_OPEN
            and self._half_open_trials >= self._config.half_open_limit
            and self._half_open_in_flight == 0
            and self._consecutive_successes < self._config.success_threshold
        ):
            return self._transition_locked(CircuitState.OPEN)
        return []

    def _release_trial(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1
                self._half_open_trials -= 1

    def _transition_locked(self, new_state: CircuitState) -> list[CircuitEvent]:
        previous = self._state
        now = self._clock()
        self._state = new_state
        self._last_state_change = now
        self._consecutive_successes = 0
        self._half_open_trials = 0
        self._half_open_in_flight = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = now
        if new_state is CircuitState.CLOSED:
            self._outcomes.clear()

        if previous is not new_state:
            log = logger.warning if new_state is CircuitState.OPEN else logger.info
            log(
                "circuit_state_change",
                service=self._name,
                previous=previous.value,
                state=new_state.value,
            )
            return [CircuitEvent.STATE_CHANGE]
        return []

    def _prune_locked(self, now: float) -> None:
        horizon = now - self._config.window_ms / 1000
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _retry_after_locked(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self._config.open_timeout_ms / 1000 - elapsed)

    def _metrics_locked(self) -> CircuitMetrics:
        self._prune_locked(self._clock())
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return CircuitMetrics(
            name=self._name,
            state=self._state,
            failures=failures,
            successes=len(self._outcomes) - failures,
            requests=len(self._outcomes),
            consecutive_successes=self._consecutive_successes,
            half_open_trials=self._half_open_trials,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_rejections=self._total_rejections,
            last_state_change=self._last_state_change,
            retry_after_seconds=self._retry_after_locked(),
        )

    def _emit(self, events: list[CircuitEvent]) -> None:
        if not events or not self._listeners:
            return
        snapshot = self.metrics()
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(self._name, event, snapshot)
                except Exception as exc:
                    logger.warning(
                        "circuit_listener_error",
                        service=self._name,
                        error=str(exc),
                        listener=getattr(listener, "__name__", repr(listener)),
                    )


class CircuitBreakerRegistry:
    """Named breakers owned by the application context.

    Populated at startup with one breaker per known dependency; lookups of
    unknown names raise ``KeyError`` unless :meth:`get_or_create` is used.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def register(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        replace: bool = False,
    ) -> CircuitBreaker:
        with self._lock:
            if name in self._breakers and not replace:
                return self._breakers[name]
            breaker = CircuitBreaker(name, config, clock=self._clock)
            self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            return self._breakers[name]

    def get_or_create(
        self, name: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        return self.register(name, config)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def all(self) -> dict[str, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def all_metrics(self) -> dict[str, CircuitMetrics]:
        return {name: breaker.metrics() for name, breaker in self.all().items()}

    def all_status(self) -> dict[str, str]:
        return {name: breaker.status_message() for name, breaker in self.all().items()}

    def add_listener(self, listener: CircuitListener) -> None:
        for breaker in self.all().values():
            breaker.add_listener(listener)

    def reset_all(self) -> None:
        for breaker in self.all().values():
            breaker.reset()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers
