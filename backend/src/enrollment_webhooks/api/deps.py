"""FastAPI dependencies for database sessions and delivery components."""
from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from enrollment_webhooks.runtime import WebhookRuntime
from enrollment_webhooks.services.webhook_registry import WebhookRegistry


def get_runtime(request: Request) -> WebhookRuntime:
    """Delivery runtime built by ``create_app``."""
    return request.app.state.runtime


async def get_db(runtime: WebhookRuntime = Depends(get_runtime)) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with runtime.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_registry(
    db: AsyncSession = Depends(get_db),
    runtime: WebhookRuntime = Depends(get_runtime),
) -> WebhookRegistry:
    """Webhook registry bound to the request session."""
    return runtime.registry(db)
