"""Rate limiting and retry policy."""

from qbolink.resilience.rate_limiter import Grant, SlidingWindowRateLimiter
from qbolink.resilience.retry import RetryPolicy

__all__ = ["Grant", "RetryPolicy", "SlidingWindowRateLimiter"]
