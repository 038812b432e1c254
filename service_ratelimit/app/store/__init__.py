"""
Counter store access for the rate limiter.

The connector owns the Redis connection pool and executes the token bucket
procedure server-side so concurrent callers on any host see one atomic
read-modify-write per key.
"""

from .redis_connector import BUCKET_IDLE_TTL_SECONDS, RedisStoreConnector, parse_bucket_reply

__all__ = ["BUCKET_IDLE_TTL_SECONDS", "RedisStoreConnector", "parse_bucket_reply"]
