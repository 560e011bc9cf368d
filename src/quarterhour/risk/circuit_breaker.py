"""Consecutive-failure circuit breaker for order placement."""

import time
from dataclasses import dataclass
from typing import Optional

import structlog

from ..metrics import CIRCUIT_BREAKER_TRIPS, CONSECUTIVE_FAILURES

log = structlog.get_logger()


@dataclass
class CircuitBreakerState:
    """Current state of the circuit breaker."""

    consecutive_failures: int = 0
    tripped_at: Optional[float] = None
    last_reason: Optional[str] = None

    @property
    def is_tripped(self) -> bool:
        return self.tripped_at is not None


class FailureCircuitBreaker:
    """Halts trading after too many consecutive order failures.

    Every failed entry or exit order increments the counter and every
    successful one resets it. At ``max_consecutive_failures`` the breaker
    trips and stays tripped until ``reset()``; further failures saturate
    at the limit.
    """

    def __init__(self, max_consecutive_failures: int = 5, market: str = ""):
        self._max = max_consecutive_failures
        self._market = market
        self._state = CircuitBreakerState()

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def tripped(self) -> bool:
        return self._state.is_tripped

    @property
    def max_consecutive_failures(self) -> int:
        return self._max

    def record_failure(self, reason: str = "") -> bool:
        """Count a failure. Returns True if this failure tripped the breaker."""
        state = self._state
        state.consecutive_failures = min(state.consecutive_failures + 1, self._max)
        state.last_reason = reason or state.last_reason
        CONSECUTIVE_FAILURES.labels(market=self._market).set(state.consecutive_failures)

        if state.consecutive_failures >= self._max and not state.is_tripped:
            state.tripped_at = time.time()
            CIRCUIT_BREAKER_TRIPS.labels(market=self._market).inc()
            log.error(
                "Circuit breaker tripped",
                market=self._market,
                failures=state.consecutive_failures,
                reason=reason,
            )
            return True

        log.warning(
            "Order failure recorded",
            market=self._market,
            failures=state.consecutive_failures,
            max=self._max,
            reason=reason,
        )
        return False

    def record_success(self) -> None:
        """Reset the failure counter. Does not clear a trip."""
        if self._state.consecutive_failures:
            log.debug("Failure counter reset", market=self._market)
        self._state.consecutive_failures = 0
        CONSECUTIVE_FAILURES.labels(market=self._market).set(0)

    def reset(self) -> None:
        """Clear the counter and any trip."""
        if self._state.is_tripped:
            log.info("Circuit breaker reset", market=self._market)
        self._state = CircuitBreakerState()
        CONSECUTIVE_FAILURES.labels(market=self._market).set(0)
