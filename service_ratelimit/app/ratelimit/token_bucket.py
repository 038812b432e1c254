"""
Distributed token bucket rate limiter.

Bucket state (``tokens``, ``last_refill``) lives in a Redis hash per client
and is refilled and consumed by a Lua script, so two concurrent checks for
the same client can never both spend the last token.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TYPE_CHECKING

from shared.errors import InvalidLimitError, RateLimiterException
from shared.logging import get_logger
from shared.tracing import trace_operation

if TYPE_CHECKING:
    from shared.metrics import MetricsCollector
    from ..store.redis_connector import RedisStoreConnector

KEY_PREFIX = "ratelimit:"

# Largest limit or burst the Lua script (IEEE doubles) represents exactly.
MAX_LIMIT = 2 ** 53

Clock = Callable[[], int]


def wall_clock_ms() -> int:
    """Milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class Decision:
    """Outcome of a single rate limit check."""
    allowed: bool
    remaining: int
    retry_after_ms: int


@dataclass(frozen=True)
class BucketParameters:
    """Store-facing parameters derived from a requested limit."""
    key: str
    max_tokens: int
    refill_rate: float


class TokenBucketRateLimiter:
    """Token bucket engine; stateless apart from its store connector."""

    def __init__(
        self,
        connector: "RedisStoreConnector",
        clock: Optional[Clock] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.connector = connector
        self.clock = clock or wall_clock_ms
        self.metrics = metrics
        self.logger = get_logger("ratelimit.token_bucket")

    @staticmethod
    def make_key(client_id: str) -> str:
        """Generate the bucket key for a client identity."""
        return f"{KEY_PREFIX}{client_id}"

    def bucket_parameters(
        self,
        client_id: str,
        requests_per_minute: int,
        burst: Optional[int] = None,
    ) -> BucketParameters:
        """Validate a requested limit and translate it for the store.

        A missing burst defaults to the per-minute limit; a burst of zero (or
        less) still admits a single request.
        """
        if requests_per_minute <= 0:
            raise InvalidLimitError(
                "requests_per_minute must be a positive integer",
                {"requests_per_minute": requests_per_minute}
            )
        if requests_per_minute > MAX_LIMIT:
            raise InvalidLimitError(
                f"requests_per_minute must not exceed {MAX_LIMIT}",
                {"requests_per_minute": requests_per_minute}
            )
        if burst is not None and burst > MAX_LIMIT:
            raise InvalidLimitError(
                f"burst must not exceed {MAX_LIMIT}",
                {"burst": burst}
            )
        if burst is None:
            burst = requests_per_minute

        return BucketParameters(
            key=self.make_key(client_id),
            max_tokens=max(burst, 1),
            refill_rate=requests_per_minute / 60.0,
        )

    async def check(
        self,
        client_id: str,
        requests_per_minute: int,
        burst: Optional[int] = None,
    ) -> Decision:
        """Consume one token for ``client_id`` if available."""
        params = self.bucket_parameters(client_id, requests_per_minute, burst)
        now_ms = self.clock()

        with trace_operation(
            "ratelimit.check",
            client_id=client_id,
            max_tokens=params.max_tokens,
            refill_rate=params.refill_rate,
        ) as span:
            allowed, remaining, retry_after_ms = await self._invoke(params, now_ms)
            span.set_attribute("ratelimit.allowed", allowed)

        decision = Decision(allowed=allowed, remaining=remaining, retry_after_ms=retry_after_ms)
        if self.metrics:
            self.metrics.record_decision(decision.allowed)

        if decision.allowed:
            self.logger.debug(
                "Rate limit check passed",
                client_id=client_id,
                remaining=decision.remaining
            )
        else:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                limit=requests_per_minute,
                burst=params.max_tokens,
                retry_after_ms=decision.retry_after_ms
            )
        return decision

    async def _invoke(self, params: BucketParameters, now_ms: int) -> Tuple[bool, int, int]:
        try:
            if self.metrics:
                with self.metrics.time_operation("ratelimit_check_duration_seconds"):
                    return await self.connector.invoke_atomic(
                        params.key, params.max_tokens, params.refill_rate, now_ms
                    )
            return await self.connector.invoke_atomic(
                params.key, params.max_tokens, params.refill_rate, now_ms
            )
        except RateLimiterException as e:
            self.logger.error(
                "Rate limit store error",
                key=params.key,
                code=e.code,
                error=e.message,
                details=e.details
            )
            if self.metrics:
                self.metrics.record_store_error(e.code)
            raise

    async def ping(self) -> bool:
        """Liveness of the backing store; raises ``StoreUnavailableError``."""
        return await self.connector.ping()
