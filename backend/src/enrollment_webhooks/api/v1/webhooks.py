"""Webhook subscription and delivery API endpoints."""
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Body, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_webhooks.api.deps import get_db, get_registry, get_runtime
from enrollment_webhooks.models.delivery_attempt import AttemptOutcome
from enrollment_webhooks.runtime import WebhookRuntime
from enrollment_webhooks.schemas.error import REMEDIATION_HINTS, ErrorCode
from enrollment_webhooks.schemas.webhook import (
    SUPPORTED_EVENTS,
    DeliveryResultRead,
    DeliveryStatus,
    DeliveryStatusResponse,
    DeliveryTestRequest,
    DispatchReportRead,
    DispatchRequest,
    FailedDelivery,
    FailedDeliveryList,
    HealthMetrics,
    SecretRotated,
    SignatureCheck,
    Webhook,
    WebhookCreate,
    WebhookDeleted,
    WebhookList,
    WebhookRegistered,
    WebhookUpdate,
)
from enrollment_webhooks.services.delivery_log import DeliveryLog
from enrollment_webhooks.services.delivery_worker import DeliveryOutcome, DeliveryResult
from enrollment_webhooks.services.dispatcher import DispatchReport
from enrollment_webhooks.services.signature import SIGNATURE_HEADER
from enrollment_webhooks.services.webhook_registry import WebhookRegistry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _result_read(result: DeliveryResult) -> DeliveryResultRead:
    return DeliveryResultRead(
        webhook_id=result.webhook_id,
        delivery_id=result.delivery_id,
        outcome=result.outcome.value,
        attempt_number=result.attempt_number,
        http_status=result.http_status,
        latency_ms=result.latency_ms,
        error=result.error,
    )


def _report_read(report: DispatchReport) -> DispatchReportRead:
    return DispatchReportRead(
        event=report.event,
        matched=report.matched,
        delivered=report.count(DeliveryOutcome.DELIVERED),
        failed=report.count(DeliveryOutcome.FAILED),
        skipped=report.count(DeliveryOutcome.SKIPPED),
        circuit_broken=report.count(DeliveryOutcome.CIRCUIT_BROKEN),
        rate_limited=report.count(DeliveryOutcome.RATE_LIMITED),
        results=[_result_read(result) for result in report.results],
    )


@router.post("", response_model=WebhookRegistered, status_code=status.HTTP_201_CREATED)
async def register_webhook(
    webhook_data: WebhookCreate,
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
) -> WebhookRegistered:
    """
    Register a webhook subscription.

    - **url**: HTTPS endpoint receiving deliveries (required)
    - **events**: Event types to subscribe to (required, non-empty)
    - **secret**: Signing secret (optional, generated when omitted)
    - **config**: Custom headers, timeout and description (optional)

    The secret is returned only here and by secret rotation.
    """
    subscription = await registry.register(
        webhook_data.url,
        webhook_data.events,
        secret=webhook_data.secret,
        config=webhook_data.config,
    )
    await db.commit()

    return WebhookRegistered(
        webhook_id=subscription.id,
        secret=subscription.secret,
        supported_events=SUPPORTED_EVENTS,
    )


@router.get("", response_model=WebhookList)
async def list_webhooks(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    registry: WebhookRegistry = Depends(get_registry),
) -> WebhookList:
    """List active webhook subscriptions with pagination."""
    subscriptions, total = await registry.list_page(page, page_size)

    return WebhookList(
        items=[Webhook.model_validate(subscription) for subscription in subscriptions],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/events", response_model=DispatchReportRead, status_code=status.HTTP_202_ACCEPTED)
async def dispatch_event(
    event_data: DispatchRequest,
    runtime: WebhookRuntime = Depends(get_runtime),
) -> DispatchReportRead:
    """
    Fan a domain event out to every subscribed webhook.

    Individual delivery failures are reported in the response, never raised;
    failed deliveries are retried by the background sweeper.
    """
    report = await runtime.dispatcher.dispatch_event(event_data.event, event_data.payload)
    return _report_read(report)


@router.get("/{webhook_id}", response_model=Webhook)
async def get_webhook(
    webhook_id: UUID,
    registry: WebhookRegistry = Depends(get_registry),
) -> Webhook:
    """Get a webhook subscription by ID (the secret is never returned)."""
    return Webhook.model_validate(await registry.get(webhook_id))


@router.put("/{webhook_id}", response_model=Webhook)
async def update_webhook(
    webhook_id: UUID,
    webhook_data: WebhookUpdate,
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
) -> Webhook:
    """
    Update a webhook subscription.

    Only the supplied fields (url, events, config) change.
    """
    subscription = await registry.update(webhook_id, webhook_data)
    await db.commit()
    return Webhook.model_validate(subscription)


@router.delete("/{webhook_id}", response_model=WebhookDeleted)
async def delete_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
    runtime: WebhookRuntime = Depends(get_runtime),
) -> WebhookDeleted:
    """
    Delete a webhook subscription.

    Deletion is soft and idempotent; queued retries for the webhook are skipped.
    """
    await registry.delete(webhook_id)
    await db.commit()
    await runtime.forget(webhook_id)

    return WebhookDeleted(webhook_id=webhook_id)


@router.get("/{webhook_id}/delivery-status", response_model=DeliveryStatusResponse)
async def get_delivery_status(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
    runtime: WebhookRuntime = Depends(get_runtime),
) -> DeliveryStatusResponse:
    """Circuit breaker state, retry backlog and health metrics of a webhook."""
    await registry.get(webhook_id)

    log = DeliveryLog(db)
    metrics = await log.metrics_for(webhook_id)
    counts = await log.outcome_counts(webhook_id)

    circuit = await runtime.circuit_breaker.snapshot(webhook_id)
    opened_at = (
        datetime.fromtimestamp(circuit.opened_at, timezone.utc).replace(tzinfo=None)
        if circuit.opened_at is not None
        else None
    )

    return DeliveryStatusResponse(
        delivery_status=DeliveryStatus(
            circuit_state=circuit.state.value,
            consecutive_failures=circuit.consecutive_failures,
            circuit_opened_at=opened_at,
            pending_retries=counts[AttemptOutcome.FAILED],
            abandoned_deliveries=counts[AttemptOutcome.ABANDONED],
            last_attempt_at=metrics.last_attempt_at,
            last_success_at=metrics.last_success_at,
            last_failure_at=metrics.last_failure_at,
            last_http_status=metrics.last_http_status,
            last_error=metrics.last_error,
        ),
        health_metrics=HealthMetrics(
            total_deliveries=metrics.total_deliveries,
            successful_deliveries=metrics.successful_deliveries,
            average_latency=round(metrics.average_latency_ms, 3),
            health_score=metrics.health_score,
            status=metrics.health_status,
        ),
    )


@router.get("/{webhook_id}/failed-deliveries", response_model=FailedDeliveryList)
async def list_failed_deliveries(
    webhook_id: UUID,
    outcome: AttemptOutcome | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
) -> FailedDeliveryList:
    """
    Inspect the failure store of a webhook.

    - **outcome**: Filter by failed, success (recovered by retry) or abandoned
    """
    await registry.get(webhook_id, include_deleted=True)
    rows, total = await DeliveryLog(db).failed_deliveries(webhook_id, outcome=outcome, limit=limit)

    return FailedDeliveryList(items=[FailedDelivery.model_validate(row) for row in rows], total=total)


@router.post("/{webhook_id}/rotate-secret", response_model=SecretRotated)
async def rotate_secret(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_db),
    registry: WebhookRegistry = Depends(get_registry),
) -> SecretRotated:
    """
    Replace the signing secret.

    The previous secret stops verifying immediately; deliveries already in
    flight keep the signature they were sent with.
    """
    new_secret = await registry.rotate_secret(webhook_id)
    await db.commit()

    return SecretRotated(webhook_id=webhook_id, new_secret=new_secret)


@router.post("/{webhook_id}/test", response_model=DeliveryResultRead)
async def test_webhook(
    webhook_id: UUID,
    test_data: DeliveryTestRequest | None = None,
    registry: WebhookRegistry = Depends(get_registry),
    runtime: WebhookRuntime = Depends(get_runtime),
) -> JSONResponse:
    """
    Send a synchronous test delivery.

    Limited to 100 calls per minute per webhook. Returns 503 while the
    circuit breaker is open and 502 when the endpoint rejects the delivery.
    """
    test_data = test_data or DeliveryTestRequest()
    subscription = await registry.get(webhook_id)

    result = await runtime.worker.deliver(
        subscription,
        test_data.event,
        test_data.payload,
        enforce_rate_limit=True,
    )
    headers = result.rate_limit.headers() if result.rate_limit else {}

    if result.outcome == DeliveryOutcome.DELIVERED:
        return JSONResponse(content=_result_read(result).model_dump(mode="json"), headers=headers)

    if result.outcome == DeliveryOutcome.RATE_LIMITED:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Too Many Requests",
                "message": "Rate limit exceeded for test deliveries",
                "retry_after": result.rate_limit.retry_after,
                "remediation": REMEDIATION_HINTS.get(ErrorCode.RATE_LIMIT_EXCEEDED),
            },
            headers=headers,
        )

    if result.outcome == DeliveryOutcome.CIRCUIT_BROKEN:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "Service Unavailable",
                "message": "Circuit breaker is open",
                "remediation": REMEDIATION_HINTS.get(ErrorCode.CIRCUIT_OPEN),
            },
            headers=headers,
        )

    if result.outcome == DeliveryOutcome.SKIPPED:
        # Deleted between the lookup and the delivery
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "NotFound", "message": f"Webhook {webhook_id} not found"},
            headers=headers,
        )

    logger.warning("webhook_test_failed", webhook_id=str(webhook_id), error=result.error)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            **_result_read(result).model_dump(mode="json"),
            "message": "Test delivery failed",
            "remediation": REMEDIATION_HINTS.get(ErrorCode.DELIVERY_FAILED),
        },
        headers=headers,
    )


@router.post("/{webhook_id}/verify-signature", response_model=SignatureCheck)
async def verify_signature(
    webhook_id: UUID,
    payload: dict[str, Any] = Body(...),
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    registry: WebhookRegistry = Depends(get_registry),
) -> SignatureCheck:
    """
    Verify a signed payload against the webhook's current secret.

    The body is the signed JSON document and the signature is read from the
    X-Webhook-Signature header. Returns 401 when verification fails.
    """
    await registry.validate_signature(webhook_id, signature, payload)
    return SignatureCheck(webhook_id=webhook_id, valid=True)
