"""Risk management module."""

from .circuit_breaker import CircuitBreakerState, FailureCircuitBreaker

__all__ = ["CircuitBreakerState", "FailureCircuitBreaker"]
