"""
Redis connector for the rate limiter.

Holds a pooled ``redis.asyncio`` client and the registered token bucket
script. Every failure to reach Redis surfaces as ``StoreUnavailableError``;
nothing is retried here.
"""

import asyncio
from typing import Any, Optional, Tuple

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    NoScriptError,
    OutOfMemoryError,
    ReadOnlyError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from shared.config import redacted_url
from shared.errors import StoreProtocolError, StoreUnavailableError
from shared.logging import get_logger

from ..ratelimit.scripts import TOKEN_BUCKET_SCRIPT

BUCKET_IDLE_TTL_SECONDS = 120

_UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError, asyncio.TimeoutError)

# Error replies from a server that cannot serve the call right now.
_TRANSIENT_REPLY_PREFIXES = ("BUSY", "LOADING", "MASTERDOWN", "TRYAGAIN")


class RedisStoreConnector:
    """Pooled connection to the shared counter store."""

    def __init__(
        self,
        client: redis.Redis,
        bucket_ttl_seconds: int = BUCKET_IDLE_TTL_SECONDS,
        description: str = "redis",
    ):
        self._redis = client
        self.bucket_ttl_seconds = bucket_ttl_seconds
        self.description = description
        self.logger = get_logger("ratelimit.store")
        self._script = self._redis.register_script(TOKEN_BUCKET_SCRIPT)

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        max_connections: int = 32,
        socket_timeout: Optional[float] = 2.0,
        socket_connect_timeout: Optional[float] = 2.0,
        bucket_ttl_seconds: int = BUCKET_IDLE_TTL_SECONDS,
    ) -> "RedisStoreConnector":
        """Build a connector backed by a bounded connection pool.

        Callers beyond ``max_connections`` wait up to ``socket_timeout`` for a
        free connection.
        """
        pool = redis.BlockingConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            timeout=socket_timeout,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            retry_on_timeout=False,
            retry=Retry(NoBackoff(), 0),
        )
        client = redis.Redis(connection_pool=pool)
        return cls(client, bucket_ttl_seconds=bucket_ttl_seconds, description=redacted_url(redis_url))

    async def start(self) -> bool:
        """Verify the store is reachable; returns False instead of raising."""
        try:
            await self.ping()
        except StoreUnavailableError as e:
            self.logger.error("Redis store unreachable at startup", store=self.description, error=e.message)
            return False

        self.logger.info("Redis store connected", store=self.description)
        return True

    async def close(self):
        """Release pooled connections."""
        await self._redis.aclose()
        self.logger.info("Redis store connection closed", store=self.description)

    async def ping(self) -> bool:
        """Liveness check against the store."""
        try:
            await self._redis.ping()
        except _UNAVAILABLE_ERRORS + (RedisError,) as e:
            raise StoreUnavailableError("Redis ping failed", {"error": str(e)}) from e
        return True

    async def invoke_atomic(
        self,
        key: str,
        max_tokens: int,
        refill_rate: float,
        now_ms: int,
    ) -> Tuple[bool, int, int]:
        """Run the token bucket procedure for ``key`` inside Redis.

        Returns ``(allowed, remaining, retry_after_ms)``.
        """
        try:
            reply = await self._script(
                keys=[key],
                args=[max_tokens, refill_rate, now_ms, self.bucket_ttl_seconds],
            )
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError("Redis unavailable", {"key": key, "error": str(e)}) from e
        except NoScriptError as e:
            # Script cache was flushed between EVALSHA and the reload; the call did not run.
            raise StoreUnavailableError("Redis script cache unavailable", {"key": key, "error": str(e)}) from e
        except (ReadOnlyError, OutOfMemoryError) as e:
            raise StoreUnavailableError("Redis cannot accept writes", {"key": key, "error": str(e)}) from e
        except ResponseError as e:
            if str(e).startswith(_TRANSIENT_REPLY_PREFIXES):
                raise StoreUnavailableError("Redis unavailable", {"key": key, "error": str(e)}) from e
            raise StoreProtocolError("Token bucket script failed", {"key": key, "error": str(e)}) from e
        except RedisError as e:
            raise StoreUnavailableError("Redis unavailable", {"key": key, "error": str(e)}) from e

        return parse_bucket_reply(reply)


def parse_bucket_reply(reply: Any) -> Tuple[bool, int, int]:
    """Validate the three-element reply of the token bucket script."""
    if not isinstance(reply, (list, tuple)) or len(reply) != 3:
        raise StoreProtocolError(
            "Token bucket reply must have three elements",
            {"reply": repr(reply)}
        )

    if any(isinstance(value, bool) or not isinstance(value, int) for value in reply):
        raise StoreProtocolError(
            "Token bucket reply must contain integers",
            {"reply": repr(reply)}
        )

    allowed, remaining, retry_after_ms = reply
    if allowed not in (0, 1) or remaining < 0 or retry_after_ms < 0:
        raise StoreProtocolError(
            "Token bucket reply out of range",
            {"reply": repr(reply)}
        )

    return allowed == 1, remaining, retry_after_ms
