"""
Resilience feature — circuit breakers keyed by name.

Public API:
    from features.resilience import BreakerRegistry, BreakerState, CircuitBreaker
"""

from features.resilience.breaker import BreakerRegistry, BreakerState, CircuitBreaker

__all__ = ["BreakerRegistry", "BreakerState", "CircuitBreaker"]
