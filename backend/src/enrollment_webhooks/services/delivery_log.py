"""Read side of delivery metrics and the failure store."""
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_webhooks.models.delivery_attempt import AttemptOutcome, DeliveryAttempt
from enrollment_webhooks.models.webhook_metrics import WebhookMetrics


class DeliveryLog:
    """Queries over per-webhook metrics and failed deliveries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def metrics_for(self, webhook_id: UUID) -> WebhookMetrics:
        """Metrics row of a webhook; an empty (unsaved) row if none was written yet."""
        result = await self.db.execute(select(WebhookMetrics).where(WebhookMetrics.webhook_id == webhook_id))
        row = result.scalar_one_or_none()
        if row is None:
            row = WebhookMetrics(webhook_id=webhook_id, total_deliveries=0, successful_deliveries=0, average_latency_ms=0.0)
        return row

    async def outcome_counts(self, webhook_id: UUID) -> dict[AttemptOutcome, int]:
        """Number of failure store rows per outcome."""
        result = await self.db.execute(
            select(DeliveryAttempt.outcome, func.count())
            .where(DeliveryAttempt.webhook_id == webhook_id)
            .group_by(DeliveryAttempt.outcome)
        )
        counts = {outcome: 0 for outcome in AttemptOutcome}
        counts.update({outcome: count for outcome, count in result.all()})
        return counts

    async def failed_deliveries(
        self,
        webhook_id: UUID,
        outcome: AttemptOutcome | None = None,
        limit: int = 100,
    ) -> tuple[list[DeliveryAttempt], int]:
        """
        Failure store rows of a webhook, newest first.

        Returns:
            Tuple of (rows, total count)
        """
        conditions = [DeliveryAttempt.webhook_id == webhook_id]
        if outcome is not None:
            conditions.append(DeliveryAttempt.outcome == outcome)

        total = await self.db.scalar(select(func.count()).select_from(DeliveryAttempt).where(*conditions))
        result = await self.db.execute(
            select(DeliveryAttempt)
            .where(*conditions)
            .order_by(DeliveryAttempt.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0
