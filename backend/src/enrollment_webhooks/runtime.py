"""Process-wide delivery components shared by the API and the background worker."""
import random
import time
from dataclasses import dataclass
from typing import Callable

import httpx
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from enrollment_webhooks.cache import create_redis
from enrollment_webhooks.config import Settings
from enrollment_webhooks.services.circuit_breaker import CircuitBreaker
from enrollment_webhooks.services.delivery_worker import DeliveryWorker
from enrollment_webhooks.services.dispatcher import Dispatcher
from enrollment_webhooks.services.rate_limiter import SlidingWindowRateLimiter
from enrollment_webhooks.services.webhook_registry import WebhookRegistry
from enrollment_webhooks.workers.retry_sweeper import RetrySweeper


@dataclass
class WebhookRuntime:
    """
    Wiring of breaker, limiters, worker, dispatcher and sweeper.

    Breaker and limiter state lives in Redis, so the API server and the ARQ
    worker enforce the same circuits and windows.
    """

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    redis: redis.Redis
    circuit_breaker: CircuitBreaker
    test_rate_limiter: SlidingWindowRateLimiter
    dispatch_rate_limiter: SlidingWindowRateLimiter
    worker: DeliveryWorker
    dispatcher: Dispatcher
    sweeper: RetrySweeper
    engine: AsyncEngine | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        *,
        redis_client: redis.Redis | None = None,
        engine: AsyncEngine | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> "WebhookRuntime":
        """
        Assemble the delivery components.

        ``clock`` drives latency measurements; ``wall_clock`` drives breaker
        and limiter windows, signature timestamps and retry scheduling.
        """
        if redis_client is None:
            redis_client = create_redis(settings)

        circuit_breaker = CircuitBreaker(
            redis_client,
            failure_threshold=settings.circuit_failure_threshold,
            open_duration_seconds=settings.circuit_open_seconds,
            clock=wall_clock,
        )
        test_rate_limiter = SlidingWindowRateLimiter(
            redis_client,
            limit=settings.webhook_test_rate_limit,
            window_seconds=settings.webhook_test_rate_window_seconds,
            clock=wall_clock,
            key_prefix="rate_limit:test",
        )
        dispatch_rate_limiter = SlidingWindowRateLimiter(
            redis_client,
            limit=settings.webhook_dispatch_rate_limit,
            window_seconds=settings.webhook_dispatch_rate_window_seconds,
            clock=wall_clock,
            key_prefix="rate_limit:dispatch",
        )
        worker = DeliveryWorker(
            session_factory,
            http_client,
            circuit_breaker,
            test_rate_limiter,
            settings,
            clock=clock,
            wall_clock=wall_clock,
            rng=rng,
        )
        dispatcher = Dispatcher(session_factory, worker, rate_limiter=dispatch_rate_limiter)
        sweeper = RetrySweeper(session_factory, dispatcher, settings, clock=worker.now)

        return cls(
            settings=settings,
            session_factory=session_factory,
            http_client=http_client,
            redis=redis_client,
            circuit_breaker=circuit_breaker,
            test_rate_limiter=test_rate_limiter,
            dispatch_rate_limiter=dispatch_rate_limiter,
            worker=worker,
            dispatcher=dispatcher,
            sweeper=sweeper,
            engine=engine,
        )

    def registry(self, db: AsyncSession) -> WebhookRegistry:
        """Registry bound to a request's session."""
        return WebhookRegistry(
            db,
            secret_bytes=self.settings.webhook_secret_bytes,
            signature_tolerance_seconds=self.settings.webhook_signature_tolerance_seconds,
        )

    async def forget(self, webhook_id: object) -> None:
        """Drop breaker, limiter and lock state of a deleted webhook."""
        await self.worker.forget(webhook_id)
        await self.dispatch_rate_limiter.reset(webhook_id)

    async def aclose(self) -> None:
        """Close the HTTP and Redis clients and dispose of the engine, if owned."""
        await self.http_client.aclose()
        await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
