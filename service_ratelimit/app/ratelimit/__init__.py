"""
Rate limiting package for the rate limiter service.

Holds the distributed token bucket engine and the Lua procedure it runs
inside Redis to enforce per-identity request budgets with burst tolerance.
"""

from .token_bucket import Decision, TokenBucketRateLimiter, wall_clock_ms

__all__ = ["Decision", "TokenBucketRateLimiter", "wall_clock_ms"]
