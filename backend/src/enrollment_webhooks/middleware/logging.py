"""Structured logging middleware with request context."""
import logging
import sys
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from enrollment_webhooks.config import Settings

REQUEST_ID_HEADER = "X-Request-ID"


def setup_logging(settings: Settings) -> None:
    """Configure structured logging with structlog."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # JSON for production, console for development
    if settings.app_env == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured request/response logging with request_id context.

    Reuses the caller's X-Request-ID when present so the id propagates to
    outbound deliveries and audit rows.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            client_host=request.client.host if request.client else None,
        )
        request.state.request_id = request_id

        logger = structlog.get_logger(__name__)
        logger.info("request_started", query_params=dict(request.query_params))

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("request_failed", exc_info=exc)
            raise

        logger.info("request_completed", status_code=response.status_code)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
