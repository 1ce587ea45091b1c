"""Signed HTTP delivery of one event to one webhook."""
import asyncio
import enum
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID, uuid4

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_webhooks import metrics
from enrollment_webhooks.config import Settings
from enrollment_webhooks.models.delivery_attempt import AttemptOutcome, DeliveryAttempt
from enrollment_webhooks.models.webhook_metrics import WebhookMetrics
from enrollment_webhooks.models.webhook_subscription import WebhookSubscription
from enrollment_webhooks.services import signature
from enrollment_webhooks.services.circuit_breaker import CircuitBreaker
from enrollment_webhooks.services.rate_limiter import RateLimitDecision, SlidingWindowRateLimiter
from enrollment_webhooks.services.webhook_registry import WebhookRegistry, options_for

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 500


class DeliveryOutcome(str, enum.Enum):
    """Result of one delivery call."""

    DELIVERED = "delivered"
    SKIPPED = "skipped"  # webhook missing or deleted
    CIRCUIT_BROKEN = "circuit_broken"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Outcome of delivering one event to one webhook."""

    webhook_id: UUID
    outcome: DeliveryOutcome
    delivery_id: str | None = None
    attempt_number: int = 0
    http_status: int | None = None
    latency_ms: float | None = None
    error: str | None = None
    rate_limit: RateLimitDecision | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome == DeliveryOutcome.DELIVERED


class DeliveryWorker:
    """
    Performs signed HTTP POSTs and owns the circuit breaker and per-webhook metrics.

    Deliveries to the same webhook are serialized with a per-id lock so that
    metric updates have a single writer in this process; breaker state is
    shared through Redis. Database sessions are opened only around reads and
    writes, never across the outbound request.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        circuit_breaker: CircuitBreaker,
        test_rate_limiter: SlidingWindowRateLimiter,
        settings: Settings,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.circuit_breaker = circuit_breaker
        self.test_rate_limiter = test_rate_limiter
        self.settings = settings
        self._clock = clock
        self._wall_clock = wall_clock
        self._rng = rng or random.Random()
        self._locks: dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        """Current naive UTC time from the injected wall clock."""
        return datetime.fromtimestamp(self._wall_clock(), timezone.utc).replace(tzinfo=None)

    def next_retry_at(self) -> datetime:
        """Jittered time of the next retry."""
        delay = self._rng.uniform(
            self.settings.webhook_retry_delay_min_minutes,
            self.settings.webhook_retry_delay_max_minutes,
        )
        return self.now() + timedelta(minutes=delay)

    async def forget(self, webhook_id: object) -> None:
        """Drop lock, breaker and test limiter state of a deleted webhook."""
        key = str(webhook_id)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
        await self.circuit_breaker.forget(key)
        await self.test_rate_limiter.reset(key)

    async def deliver(
        self,
        subscription: WebhookSubscription | UUID,
        event_type: Any,
        payload: dict[str, Any],
        *,
        enforce_rate_limit: bool = False,
        retry_of: DeliveryAttempt | None = None,
    ) -> DeliveryResult:
        """
        Deliver one event to one webhook.

        Args:
            subscription: Subscription (or its id); it is re-read before sending
            event_type: Event type value
            payload: Event data, sent as the ``data`` member of the body
            enforce_rate_limit: Apply the per-webhook test trigger limit
            retry_of: Failure store row being re-driven, if any

        Returns:
            DeliveryResult; delivery problems are reported, never raised
        """
        webhook_id = subscription if isinstance(subscription, UUID) else subscription.id
        event_type = getattr(event_type, "value", event_type)

        if enforce_rate_limit:
            decision = await self.test_rate_limiter.hit(webhook_id)
            if not decision.allowed:
                metrics.webhook_deliveries_total.labels(
                    event_type=event_type, outcome=DeliveryOutcome.RATE_LIMITED.value
                ).inc()
                logger.info("webhook_test_rate_limited", webhook_id=str(webhook_id), retry_after=decision.retry_after)
                return DeliveryResult(webhook_id, DeliveryOutcome.RATE_LIMITED, rate_limit=decision)
        else:
            decision = None

        async with self._lock_for(webhook_id):
            result = await self._deliver_locked(webhook_id, event_type, payload, retry_of)

        result.rate_limit = decision
        metrics.webhook_deliveries_total.labels(event_type=event_type, outcome=result.outcome.value).inc()
        return result

    def _lock_for(self, webhook_id: UUID) -> asyncio.Lock:
        key = str(webhook_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _deliver_locked(
        self,
        webhook_id: UUID,
        event_type: str,
        payload: dict[str, Any],
        retry_of: DeliveryAttempt | None,
    ) -> DeliveryResult:
        async with self.session_factory() as session:
            subscription = await WebhookRegistry(session).find_active(webhook_id)

        if subscription is None:
            logger.info("webhook_delivery_skipped", webhook_id=str(webhook_id), event_type=event_type)
            return DeliveryResult(webhook_id, DeliveryOutcome.SKIPPED)

        if await self.circuit_breaker.is_open(webhook_id):
            logger.info("webhook_circuit_broken", webhook_id=str(webhook_id), event_type=event_type)
            return DeliveryResult(webhook_id, DeliveryOutcome.CIRCUIT_BROKEN)

        delivery_id = retry_of.delivery_id if retry_of is not None else uuid4().hex
        attempt_number = retry_of.attempt_number + 1 if retry_of is not None else 1

        http_status, latency_ms, error = await self._post(subscription, event_type, payload, delivery_id)
        delivered = error is None

        if delivered:
            await self.circuit_breaker.record_success(webhook_id)
        else:
            await self.circuit_breaker.record_failure(webhook_id)

        async with self.session_factory() as session:
            async with session.begin():
                await self._record_metrics(session, webhook_id, delivered, http_status, latency_ms, error)
                await self._record_attempt(
                    session,
                    webhook_id=webhook_id,
                    delivery_id=delivery_id,
                    event_type=event_type,
                    payload=payload,
                    attempt_number=attempt_number,
                    delivered=delivered,
                    http_status=http_status,
                    latency_ms=latency_ms,
                    error=error,
                    retry_of=retry_of,
                )

        log = logger.info if delivered else logger.warning
        log(
            "webhook_delivered" if delivered else "webhook_delivery_failed",
            webhook_id=str(webhook_id),
            delivery_id=delivery_id,
            event_type=event_type,
            attempt=attempt_number,
            status_code=http_status,
            latency_ms=latency_ms,
            error=error,
        )

        return DeliveryResult(
            webhook_id=webhook_id,
            outcome=DeliveryOutcome.DELIVERED if delivered else DeliveryOutcome.FAILED,
            delivery_id=delivery_id,
            attempt_number=attempt_number,
            http_status=http_status,
            latency_ms=latency_ms,
            error=error,
        )

    async def _post(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
        delivery_id: str,
    ) -> tuple[int | None, float, str | None]:
        """
        Send the signed request. Returns (status, latency ms, error or None).

        Any exception while building or sending the request (bad stored URL,
        unusable options, transport errors) is reported as a failed attempt.
        """
        timeout = self.settings.webhook_delivery_timeout_seconds
        started = self._clock()
        try:
            options = options_for(subscription)
            timeout = options.timeout_seconds or timeout

            body = {"event": event_type, "data": payload}
            timestamp = int(self._wall_clock())
            request_id = structlog.contextvars.get_contextvars().get("request_id") or delivery_id

            headers = {
                **options.headers,
                "Content-Type": "application/json",
                "User-Agent": self.settings.webhook_user_agent,
                signature.SIGNATURE_HEADER: signature.sign(subscription.secret, timestamp, body),
                "X-Webhook-Timestamp": str(timestamp),
                "X-Webhook-Event": event_type,
                "X-Webhook-Delivery": delivery_id,
                "X-Request-ID": request_id,
            }

            response = await self.http_client.post(
                subscription.url,
                content=signature.canonical_json(body).encode("utf-8"),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            return None, self._elapsed_ms(started, event_type), f"Request timeout after {timeout}s"
        except httpx.HTTPError as e:
            return None, self._elapsed_ms(started, event_type), f"HTTP error: {e}"[:MAX_ERROR_LENGTH]
        except Exception as e:
            logger.error(
                "webhook_request_error",
                webhook_id=str(subscription.id),
                delivery_id=delivery_id,
                error=str(e),
                exc_info=e,
            )
            error = f"Delivery error: {type(e).__name__}: {e}"
            return None, self._elapsed_ms(started, event_type), error[:MAX_ERROR_LENGTH]

        latency_ms = self._elapsed_ms(started, event_type)
        if 200 <= response.status_code < 300:
            return response.status_code, latency_ms, None

        error = f"HTTP {response.status_code}: {response.text[:200]}"
        return response.status_code, latency_ms, error[:MAX_ERROR_LENGTH]

    def _elapsed_ms(self, started: float, event_type: str) -> float:
        elapsed = max(self._clock() - started, 0.0)
        metrics.webhook_delivery_duration_seconds.labels(event_type=event_type).observe(elapsed)
        return round(elapsed * 1000, 3)

    async def _record_metrics(
        self,
        session: AsyncSession,
        webhook_id: UUID,
        delivered: bool,
        http_status: int | None,
        latency_ms: float,
        error: str | None,
    ) -> None:
        now = self.now()
        values: dict[str, Any] = {
            "total_deliveries": WebhookMetrics.total_deliveries + 1,
            "last_attempt_at": now,
            "last_http_status": http_status,
            "updated_at": now,
        }
        if delivered:
            # Incremental mean over successful deliveries only
            values.update(
                successful_deliveries=WebhookMetrics.successful_deliveries + 1,
                average_latency_ms=WebhookMetrics.average_latency_ms
                + (latency_ms - WebhookMetrics.average_latency_ms) / (WebhookMetrics.successful_deliveries + 1),
                last_success_at=now,
                last_error=None,
            )
        else:
            values.update(last_failure_at=now, last_error=error)

        result = await session.execute(
            update(WebhookMetrics)
            .where(WebhookMetrics.webhook_id == webhook_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return

        session.add(
            WebhookMetrics(
                webhook_id=webhook_id,
                total_deliveries=1,
                successful_deliveries=1 if delivered else 0,
                average_latency_ms=latency_ms if delivered else 0.0,
                last_attempt_at=now,
                last_success_at=now if delivered else None,
                last_failure_at=None if delivered else now,
                last_http_status=http_status,
                last_error=error,
            )
        )

    async def _record_attempt(
        self,
        session: AsyncSession,
        *,
        webhook_id: UUID,
        delivery_id: str,
        event_type: str,
        payload: dict[str, Any],
        attempt_number: int,
        delivered: bool,
        http_status: int | None,
        latency_ms: float,
        error: str | None,
        retry_of: DeliveryAttempt | None,
    ) -> None:
        if retry_of is None:
            if delivered:
                return
            session.add(
                DeliveryAttempt(
                    delivery_id=delivery_id,
                    webhook_id=webhook_id,
                    event_type=event_type,
                    payload=payload,
                    attempt_number=attempt_number,
                    scheduled_at=self.next_retry_at(),
                    outcome=AttemptOutcome.FAILED,
                    http_status=http_status,
                    latency_ms=latency_ms,
                    error=error,
                )
            )
            return

        values: dict[str, Any] = {
            "attempt_number": attempt_number,
            "http_status": http_status,
            "latency_ms": latency_ms,
            "error": error,
            "updated_at": self.now(),
        }
        if delivered:
            values["outcome"] = AttemptOutcome.SUCCESS
        else:
            values.update(outcome=AttemptOutcome.FAILED, scheduled_at=self.next_retry_at())

        await session.execute(
            update(DeliveryAttempt)
            .where(DeliveryAttempt.id == retry_of.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
