"""Fan-out of domain events to subscribed webhooks."""
import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_webhooks import metrics
from enrollment_webhooks.models.delivery_attempt import DeliveryAttempt
from enrollment_webhooks.models.webhook_subscription import WebhookSubscription
from enrollment_webhooks.services.delivery_worker import DeliveryOutcome, DeliveryResult, DeliveryWorker
from enrollment_webhooks.services.rate_limiter import SlidingWindowRateLimiter
from enrollment_webhooks.services.webhook_registry import WebhookRegistry, parse_event_type

logger = structlog.get_logger(__name__)


@dataclass
class DispatchReport:
    """Aggregate result of one dispatch."""

    event: str
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def matched(self) -> int:
        return len(self.results)

    def count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    def summary(self) -> dict[str, int]:
        """Counts per outcome, keyed by outcome value."""
        counts = Counter(result.outcome.value for result in self.results)
        return {outcome.value: counts.get(outcome.value, 0) for outcome in DeliveryOutcome}


class Dispatcher:
    """
    Delivers each event to every matching subscriber concurrently.

    Subscribers are isolated from each other: a failure, timeout or open
    circuit on one webhook never blocks or fails delivery to another.
    A subscriber over its dispatch rate limit is skipped for the event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker: DeliveryWorker,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ):
        self.session_factory = session_factory
        self.worker = worker
        self.rate_limiter = rate_limiter

    async def dispatch_event(self, event_type: Any, payload: dict[str, Any]) -> DispatchReport:
        """
        Deliver an event to all active subscribers of its type.

        Raises:
            InvalidEvents: If the event type is not supported
        """
        event = parse_event_type(event_type).value

        async with self.session_factory() as session:
            subscribers = await WebhookRegistry(session).list_subscribers(event)

        results = await asyncio.gather(
            *(self._deliver(subscriber, event, payload) for subscriber in subscribers),
            return_exceptions=True,
        )

        report = DispatchReport(event=event)
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "webhook_delivery_error",
                    webhook_id=str(subscriber.id),
                    event_type=event,
                    error=str(result),
                    exc_info=result,
                )
                result = DeliveryResult(subscriber.id, DeliveryOutcome.FAILED, error=f"Unexpected error: {result}")
            report.results.append(result)

        logger.info("webhook_event_dispatched", event_type=event, matched=report.matched, **report.summary())
        return report

    async def _deliver(self, subscriber: WebhookSubscription, event: str, payload: dict[str, Any]) -> DeliveryResult:
        if self.rate_limiter is not None:
            decision = await self.rate_limiter.hit(subscriber.id)
            if not decision.allowed:
                metrics.webhook_deliveries_total.labels(
                    event_type=event, outcome=DeliveryOutcome.RATE_LIMITED.value
                ).inc()
                logger.warning(
                    "webhook_dispatch_rate_limited",
                    webhook_id=str(subscriber.id),
                    event_type=event,
                    retry_after=decision.retry_after,
                )
                return DeliveryResult(subscriber.id, DeliveryOutcome.RATE_LIMITED, rate_limit=decision)

        return await self.worker.deliver(subscriber, event, payload)

    async def redeliver(self, attempt: DeliveryAttempt) -> DeliveryResult:
        """Re-drive one failed delivery to its webhook only; retries are not rate limited."""
        return await self.worker.deliver(
            attempt.webhook_id,
            attempt.event_type,
            attempt.payload,
            retry_of=attempt,
        )
