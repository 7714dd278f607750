"""
JudgeSync - Upstream Clients

Rate limiter, circuit breaker and the CourtListener API client that wraps both.
"""

from judgesync.clients.circuit_breaker import BreakerState, CircuitBreaker
from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.clients.rate_limiter import RateLimiter

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CourtListenerClient",
    "RateLimiter",
]
