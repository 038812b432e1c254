"""
Rate limiter service.

Thin HTTP front end over the distributed token bucket: it extracts the
client identity, forwards the requested limit to the engine and maps the
decision to 200 (allowed) or 429 (denied).
"""

import math
from typing import Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import StoreUnavailableError
from shared.logging import set_client_context

from .identity import extract_client_id
from .models import CheckRequest, CheckResponse
from .ratelimit.token_bucket import Clock, Decision, TokenBucketRateLimiter
from .store.redis_connector import RedisStoreConnector


class RateLimitService(BaseService):
    """Rate limiter service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        connector: Optional[RedisStoreConnector] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__("ratelimit", config)

        self.connector = connector or RedisStoreConnector.from_url(
            self.config.redis_url,
            max_connections=self.config.redis_max_connections,
            socket_timeout=self.config.redis_socket_timeout,
            socket_connect_timeout=self.config.redis_connect_timeout,
        )
        self.rate_limiter = TokenBucketRateLimiter(self.connector, clock=clock, metrics=self.metrics)

        self._setup_ratelimit_routes()

        self.app.state.ratelimit_service = self

    async def on_startup(self):
        await self.connector.start()
        self.logger.info(
            "Rate limiter service started",
            host=self.config.host,
            port=self.config.port
        )

    async def on_shutdown(self):
        await self.connector.close()
        self.logger.info("Rate limiter service stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        try:
            await self.rate_limiter.ping()
        except StoreUnavailableError as e:
            self.logger.warning("Redis health check failed", error=e.message, details=e.details)
            return {"redis": "unavailable"}
        return {"redis": "ok"}

    def _setup_ratelimit_routes(self):
        """Set up rate limiter routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "ratelimit",
                "message": "Distributed token bucket rate limiter",
                "version": "1.0.0",
                "capabilities": ["token_bucket", "burst", "retry_after"]
            }

        @self.app.post("/check", response_model=CheckResponse)
        async def check_rate_limit(body: CheckRequest, request: Request):
            """Consume one unit from the caller's bucket."""
            client_id = extract_client_id(request)
            request.state.client_id = client_id
            set_client_context(client_id)

            self.logger.info(
                "Rate limit check",
                client_id=client_id,
                limit=body.limit,
                burst=body.burst
            )

            decision = await self.rate_limiter.check(client_id, body.limit, body.burst)
            return self._decision_response(decision, body)

    def _decision_response(self, decision: Decision, body: CheckRequest) -> JSONResponse:
        """Render a decision with rate limit headers."""
        response = JSONResponse(
            status_code=200 if decision.allowed else 429,
            content=CheckResponse.from_decision(decision).model_dump()
        )
        response.headers["X-RateLimit-Limit"] = str(body.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if not decision.allowed:
            response.headers["Retry-After"] = str(math.ceil(decision.retry_after_ms / 1000))
        return response


def create_app(
    config: Optional[ServiceConfig] = None,
    connector: Optional[RedisStoreConnector] = None,
    clock: Optional[Clock] = None,
):
    """Create FastAPI application."""
    service = RateLimitService(config=config, connector=connector, clock=clock)
    return service.app


def main():
    """Console entrypoint."""
    service = RateLimitService()
    service.run()


if __name__ == "__main__":
    main()
