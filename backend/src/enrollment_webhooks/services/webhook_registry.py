"""Registry of webhook subscriptions."""
import secrets
import time
from typing import Any, Iterable
from urllib.parse import urlparse
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_webhooks import metrics
from enrollment_webhooks.exceptions import InvalidEvents, InvalidURL, NotFound, SignatureInvalid
from enrollment_webhooks.models.base import utcnow
from enrollment_webhooks.models.webhook_metrics import WebhookMetrics
from enrollment_webhooks.models.webhook_subscription import SubscriptionStatus, WebhookSubscription
from enrollment_webhooks.schemas.webhook import (
    SUPPORTED_EVENTS,
    WebhookEventType,
    WebhookOptions,
    WebhookUpdate,
)
from enrollment_webhooks.services import signature
from enrollment_webhooks.utils.audit import diff_fields, log_audit

logger = structlog.get_logger(__name__)


def validate_url(url: str) -> str:
    """
    Ensure a webhook URL is an absolute HTTPS URL.

    Raises:
        InvalidURL: If the URL is malformed, not HTTPS, or has no host
    """
    try:
        parsed = urlparse(url.strip()) if isinstance(url, str) else None
        # Port is parsed lazily and raises on out-of-range or non-numeric values
        valid = parsed is not None and parsed.scheme.lower() == "https" and bool(parsed.hostname)
        if valid:
            parsed.port
    except ValueError:
        valid = False

    if not valid:
        raise InvalidURL(
            "Invalid webhook URL. HTTPS is required.",
            details={"field": "url", "value": url},
        )
    return url.strip()


def validate_events(events: Iterable[Any] | None) -> list[str]:
    """
    Normalize a subscription's event list against the supported event types.

    Returns:
        Event type values, de-duplicated in their original order

    Raises:
        InvalidEvents: If the list is empty or contains unsupported types
    """
    values = [getattr(event, "value", event) for event in (events or [])]
    if not values:
        raise InvalidEvents(
            "At least one event type is required",
            details={"field": "events", "supported_events": SUPPORTED_EVENTS},
        )

    unsupported = [value for value in values if value not in SUPPORTED_EVENTS]
    if unsupported:
        raise InvalidEvents(
            f"Unsupported events: {', '.join(str(value) for value in unsupported)}",
            details={"field": "events", "value": unsupported, "supported_events": SUPPORTED_EVENTS},
        )

    return list(dict.fromkeys(values))


def parse_event_type(event_type: Any) -> WebhookEventType:
    """Convert an incoming event type into the closed enumeration."""
    try:
        return WebhookEventType(getattr(event_type, "value", event_type))
    except ValueError as e:
        raise InvalidEvents(
            f"Unsupported event type: {event_type}",
            details={"field": "event", "value": event_type, "supported_events": SUPPORTED_EVENTS},
        ) from e


def options_for(subscription: WebhookSubscription) -> WebhookOptions:
    """Typed delivery options of a subscription."""
    return WebhookOptions.model_validate(subscription.config or {})


class WebhookRegistry:
    """Service layer for webhook subscription CRUD."""

    def __init__(
        self,
        db: AsyncSession,
        secret_bytes: int = 32,
        signature_tolerance_seconds: int = 300,
    ):
        """Initialize registry with database session."""
        self.db = db
        self.secret_bytes = secret_bytes
        self.signature_tolerance_seconds = signature_tolerance_seconds

    def generate_secret(self) -> str:
        """Cryptographically random URL-safe secret."""
        return secrets.token_urlsafe(self.secret_bytes)

    async def register(
        self,
        url: str,
        events: Iterable[Any],
        secret: str | None = None,
        config: WebhookOptions | dict | None = None,
    ) -> WebhookSubscription:
        """
        Register a new webhook subscription.

        Args:
            url: HTTPS endpoint URL
            events: Event types to subscribe to
            secret: Optional caller-supplied secret (generated when omitted)
            config: Optional delivery options

        Returns:
            Created subscription; its ``secret`` is only exposed by this call
            and by ``rotate_secret``

        Raises:
            InvalidURL: If the URL is not HTTPS
            InvalidEvents: If events are empty or unsupported
        """
        url = validate_url(url)
        event_values = validate_events(events)
        options = WebhookOptions.model_validate(config or {})

        subscription = WebhookSubscription(
            url=url,
            events=event_values,
            secret=secret or self.generate_secret(),
            config=options.model_dump(mode="json"),
            status=SubscriptionStatus.ACTIVE,
        )
        self.db.add(subscription)
        await self.db.flush()

        self.db.add(WebhookMetrics(webhook_id=subscription.id))
        await log_audit(
            self.db,
            entity_type="webhook",
            entity_id=subscription.id,
            action="register",
            changes={"url": {"old": None, "new": url}, "events": {"old": None, "new": event_values}},
        )
        await self.db.flush()

        metrics.webhooks_registered_total.inc()
        logger.info(
            "webhook_registered",
            webhook_id=str(subscription.id),
            url=url,
            events=event_values,
        )

        return subscription

    async def get(self, webhook_id: UUID, include_deleted: bool = False) -> WebhookSubscription:
        """
        Get a subscription by ID.

        Raises:
            NotFound: If the webhook does not exist (or is deleted, unless include_deleted)
        """
        result = await self.db.execute(
            select(WebhookSubscription).where(WebhookSubscription.id == webhook_id)
        )
        subscription = result.scalar_one_or_none()

        if subscription is None or (not include_deleted and not subscription.is_active):
            raise NotFound(f"Webhook {webhook_id} not found", details={"webhook_id": str(webhook_id)})

        return subscription

    async def find_active(self, webhook_id: UUID) -> WebhookSubscription | None:
        """Fresh read of a subscription, or None if missing or deleted."""
        result = await self.db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.id == webhook_id,
                WebhookSubscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def list_page(self, page: int = 1, page_size: int = 50) -> tuple[list[WebhookSubscription], int]:
        """
        List active subscriptions with pagination.

        Returns:
            Tuple of (subscriptions, total count)
        """
        active = WebhookSubscription.status == SubscriptionStatus.ACTIVE

        total = await self.db.scalar(select(func.count()).select_from(WebhookSubscription).where(active))
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(active)
            .order_by(WebhookSubscription.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0

    async def list_subscribers(self, event_type: Any) -> list[WebhookSubscription]:
        """Active subscriptions listening for an event type."""
        event_value = parse_event_type(event_type).value

        # JSON containment differs per backend; the event list is small, filter here
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.status == SubscriptionStatus.ACTIVE)
            .order_by(WebhookSubscription.created_at)
        )
        return [sub for sub in result.scalars().all() if event_value in (sub.events or [])]

    async def update(self, webhook_id: UUID, patch: WebhookUpdate | dict) -> WebhookSubscription:
        """
        Partially update url, events, and config.

        Raises:
            NotFound: If the webhook does not exist or was deleted
            InvalidURL: If a new URL is not HTTPS
            InvalidEvents: If new events are empty or unsupported
        """
        if isinstance(patch, dict):
            patch = WebhookUpdate.model_validate(patch)
        fields = patch.model_fields_set

        subscription = await self.get(webhook_id)
        before = {"url": subscription.url, "events": list(subscription.events), "config": dict(subscription.config)}
        after: dict[str, Any] = {}

        if "url" in fields:
            after["url"] = validate_url(patch.url)
        if "events" in fields:
            after["events"] = validate_events(patch.events)
        if "config" in fields:
            after["config"] = (patch.config or WebhookOptions()).model_dump(mode="json")

        changes = diff_fields(before, after)
        for field, value in after.items():
            setattr(subscription, field, value)

        if changes:
            await log_audit(self.db, entity_type="webhook", entity_id=subscription.id, action="update", changes=changes)
        await self.db.flush()
        await self.db.refresh(subscription)

        logger.info("webhook_updated", webhook_id=str(webhook_id), fields=sorted(changes))
        return subscription

    async def delete(self, webhook_id: UUID) -> WebhookSubscription:
        """
        Soft-delete a subscription. Deleting an already deleted webhook is a no-op.

        Raises:
            NotFound: If the webhook never existed
        """
        subscription = await self.get(webhook_id, include_deleted=True)
        if not subscription.is_active:
            logger.info("webhook_already_deleted", webhook_id=str(webhook_id))
            return subscription

        subscription.status = SubscriptionStatus.DELETED
        subscription.deleted_at = utcnow()
        await log_audit(
            self.db,
            entity_type="webhook",
            entity_id=subscription.id,
            action="delete",
            changes={"status": {"old": SubscriptionStatus.ACTIVE.value, "new": SubscriptionStatus.DELETED.value}},
        )
        await self.db.flush()

        metrics.webhooks_deleted_total.inc()
        logger.info("webhook_deleted", webhook_id=str(webhook_id))
        return subscription

    async def rotate_secret(self, webhook_id: UUID) -> str:
        """
        Replace the signing secret; the previous one stops verifying immediately.

        Returns:
            The new secret (returned once, never readable afterwards)
        """
        subscription = await self.get(webhook_id)
        new_secret = self.generate_secret()

        subscription.secret = new_secret
        subscription.secret_rotated_at = utcnow()
        await log_audit(self.db, entity_type="webhook", entity_id=subscription.id, action="rotate_secret")
        await self.db.flush()

        metrics.webhook_secrets_rotated_total.inc()
        logger.info("webhook_secret_rotated", webhook_id=str(webhook_id))
        return new_secret

    async def validate_signature(
        self,
        webhook_id: UUID,
        signature_header: str | None,
        payload: Any,
        now: float | None = None,
    ) -> bool:
        """
        Verify an inbound signature with the webhook's current secret.

        Rejects stale timestamps (outside the tolerance window) to limit replay.

        Raises:
            NotFound: If the webhook does not exist
            SignatureInvalid: If the signature is missing, malformed, wrong, or stale
        """
        subscription = await self.get(webhook_id)
        now = time.time() if now is None else now

        if not signature.verify(subscription.secret, signature_header, payload):
            reason = "mismatch"
        elif not signature.is_fresh(signature_header, now, self.signature_tolerance_seconds):
            reason = "stale_timestamp"
        else:
            return True

        metrics.webhook_signature_failures_total.inc()
        logger.warning("webhook_signature_invalid", webhook_id=str(webhook_id), reason=reason)
        raise SignatureInvalid(
            "Webhook signature verification failed",
            details={"webhook_id": str(webhook_id), "reason": reason},
        )
