"""
harvester.runtime

Shared runtime utilities: per-source rate limiting and backoff.
"""

from .rate_limiter import BackoffPolicy, RateLimiter, SourceBudget

__all__ = ["BackoffPolicy", "RateLimiter", "SourceBudget"]
