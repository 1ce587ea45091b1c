"""Retry sweeper for failed webhook deliveries.

Runs every few minutes to:
1. Load failed deliveries whose scheduled retry time has passed
2. Abandon deliveries past the retry window or at the attempt limit (kept for inspection)
3. Re-drive the rest through the dispatcher, one at a time

Usage (with ARQ):
    arq enrollment_webhooks.workers.retry_sweeper.WorkerSettings
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

import httpx
import structlog
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_webhooks import metrics
from enrollment_webhooks.config import Settings, get_settings
from enrollment_webhooks.database import create_engine_from_settings, create_session_factory
from enrollment_webhooks.models.base import utcnow
from enrollment_webhooks.models.delivery_attempt import AttemptOutcome, DeliveryAttempt
from enrollment_webhooks.services.delivery_worker import DeliveryOutcome
from enrollment_webhooks.services.dispatcher import Dispatcher
from enrollment_webhooks.utils.audit import log_audit

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Counts of one sweep."""

    due: int = 0
    retried: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0
    deferred: int = 0  # circuit open or rate limited, left for the next sweep
    errors: int = 0
    already_running: bool = False


class RetrySweeper:
    """Periodically re-drives failed deliveries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.max_attempts = settings.webhook_max_attempts
        self.retry_window = timedelta(hours=settings.webhook_retry_window_hours)
        self.batch_size = settings.webhook_sweep_batch_size
        self._clock = clock
        self._lock = asyncio.Lock()

    async def sweep(self) -> SweepReport:
        """
        Process every due failed delivery once.

        Per-delivery errors are logged and counted; errors loading the failure
        store propagate so the scheduler reports the run as failed.

        Returns:
            SweepReport with counts of processed deliveries
        """
        if self._lock.locked():
            logger.info("retry_sweep_already_running")
            return SweepReport(already_running=True)

        async with self._lock:
            now = self._clock()
            try:
                due = await self._find_due_attempts(now)
            except Exception as e:
                logger.exception("retry_sweep_load_error", exc_info=e)
                raise

            report = SweepReport(due=len(due))
            logger.info("retry_sweep_started", due=report.due)

            for attempt in due:
                try:
                    await self._process(attempt, now, report)
                except Exception as e:
                    report.errors += 1
                    logger.exception(
                        "retry_sweep_attempt_error",
                        delivery_id=attempt.delivery_id,
                        webhook_id=str(attempt.webhook_id),
                        exc_info=e,
                    )

            logger.info("retry_sweep_completed", **asdict(report))
            return report

    async def _find_due_attempts(self, now: datetime) -> list[DeliveryAttempt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryAttempt)
                .where(
                    DeliveryAttempt.outcome == AttemptOutcome.FAILED,
                    DeliveryAttempt.scheduled_at <= now,
                )
                .order_by(DeliveryAttempt.scheduled_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _process(self, attempt: DeliveryAttempt, now: datetime, report: SweepReport) -> None:
        if attempt.created_at < now - self.retry_window:
            await self._abandon(attempt, "expired")
            report.abandoned += 1
            return

        if attempt.attempt_number >= self.max_attempts:
            await self._abandon(attempt, "max_attempts")
            report.abandoned += 1
            return

        result = await self.dispatcher.redeliver(attempt)
        report.retried += 1
        metrics.webhooks_retry_total.labels(event_type=attempt.event_type).inc()

        if result.outcome == DeliveryOutcome.DELIVERED:
            report.delivered += 1
            logger.info(
                "webhook_retry_succeeded",
                delivery_id=attempt.delivery_id,
                webhook_id=str(attempt.webhook_id),
                attempt=result.attempt_number,
            )
        elif result.outcome == DeliveryOutcome.FAILED:
            report.failed += 1
        elif result.outcome == DeliveryOutcome.SKIPPED:
            # Webhook deleted since the failure
            await self._abandon(attempt, "webhook_deleted")
            report.abandoned += 1
        else:
            report.deferred += 1

    async def _abandon(self, attempt: DeliveryAttempt, reason: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(DeliveryAttempt)
                    .where(DeliveryAttempt.id == attempt.id)
                    .values(outcome=AttemptOutcome.ABANDONED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await log_audit(
                    session,
                    entity_type="delivery",
                    entity_id=attempt.id,
                    action="abandon",
                    changes={
                        "outcome": {"old": AttemptOutcome.FAILED.value, "new": AttemptOutcome.ABANDONED.value},
                        "reason": reason,
                    },
                )

        metrics.webhooks_abandoned_total.labels(reason=reason).inc()
        logger.warning(
            "webhook_delivery_abandoned",
            delivery_id=attempt.delivery_id,
            webhook_id=str(attempt.webhook_id),
            attempts=attempt.attempt_number,
            reason=reason,
        )


async def startup(ctx: dict) -> None:
    """Build the delivery runtime shared by the cron jobs of this worker."""
    from enrollment_webhooks.runtime import WebhookRuntime

    settings = ctx.get("settings") or get_settings()
    engine = create_engine_from_settings(settings)
    ctx["runtime"] = WebhookRuntime.build(
        settings,
        create_session_factory(engine),
        httpx.AsyncClient(),
        engine=engine,
    )
    logger.info("retry_worker_started")


async def shutdown(ctx: dict) -> None:
    """Release the HTTP client and database pool."""
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.aclose()
    logger.info("retry_worker_stopped")


async def sweep_failed_deliveries(ctx: dict) -> dict:
    """
    ARQ cron task re-driving due failed deliveries.

    Args:
        ctx: ARQ context (holds the runtime built in ``startup``)

    Returns:
        Dict with sweep counts
    """
    report = await ctx["runtime"].sweeper.sweep()
    return asdict(report)


_settings = get_settings()


class WorkerSettings:
    """
    ARQ worker settings for the retry sweeper.

    Usage:
        arq enrollment_webhooks.workers.retry_sweeper.WorkerSettings
    """

    functions = [sweep_failed_deliveries]

    cron_jobs = [
        cron(
            sweep_failed_deliveries,
            minute=set(range(0, 60, _settings.webhook_sweep_interval_minutes)),
            unique=True,  # never overlap across workers
            timeout=600,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(_settings.arq_redis_url))

    keep_result = 3600
    max_jobs = 10
    job_timeout = 600
