"""FastAPI application entry point."""
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollment_webhooks.api.v1 import health, webhooks
from enrollment_webhooks.config import Settings, get_settings
from enrollment_webhooks.database import create_engine_from_settings, create_session_factory
from enrollment_webhooks.exceptions import WebhookError
from enrollment_webhooks.middleware.logging import LoggingMiddleware, setup_logging
from enrollment_webhooks.middleware.metrics import MetricsMiddleware
from enrollment_webhooks.middleware.rate_limit import RateLimitMiddleware
from enrollment_webhooks.runtime import WebhookRuntime
from enrollment_webhooks.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail
from enrollment_webhooks.services.rate_limiter import SlidingWindowRateLimiter
from enrollment_webhooks.tracing import setup_tracing

logger = structlog.get_logger(__name__)

# Map Pydantic error types to our error codes
VALIDATION_CODES = {
    "uuid_parsing": ErrorCode.INVALID_UUID,
    "uuid_type": ErrorCode.INVALID_UUID,
    "enum": ErrorCode.INVALID_ENUM_VALUE,
    "missing": ErrorCode.MISSING_REQUIRED_FIELD,
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "x-request-id", f"req_{uuid.uuid4().hex[:12]}"
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Structured error responses for every failure the API can surface."""

    @app.exception_handler(WebhookError)
    async def webhook_exception_handler(request: Request, exc: WebhookError) -> JSONResponse:
        """
        Handle registry and verification errors.

        Returns the status code carried by the exception class (400, 401, 404).
        """
        request_id = _request_id(request)
        logger.warning(
            "webhook_request_rejected",
            path=request.url.path,
            method=request.method,
            request_id=request_id,
            error=exc.error,
            message=exc.message,
        )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error,
                "message": exc.message,
                "details": [
                    ErrorDetail(
                        code=exc.code,
                        message=exc.message,
                        field=exc.details.get("field"),
                        value=exc.details.get("value"),
                    ).model_dump(mode="json")
                ],
                "remediation": REMEDIATION_HINTS.get(exc.code),
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Handle Pydantic validation errors with structured response.

        Returns 422 with detailed field-level validation errors.
        """
        request_id = _request_id(request)

        details = []
        for error in exc.errors():
            details.append(
                ErrorDetail(
                    code=VALIDATION_CODES.get(error["type"], ErrorCode.VALIDATION_ERROR),
                    message=error["msg"],
                    field=".".join(str(loc) for loc in error["loc"]),
                    value=error.get("input"),
                ).model_dump(mode="json")
            )

        logger.warning(
            "validation_error",
            path=request.url.path,
            method=request.method,
            request_id=request_id,
            error_count=len(details),
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "ValidationError",
                "message": "Request validation failed",
                "details": details,
                "remediation": "Check the API documentation for correct request format at /docs",
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        """
        Handle database errors.

        Returns 503 Service Unavailable for database connection issues.
        """
        request_id = _request_id(request)
        logger.error(
            "database_error",
            path=request.url.path,
            method=request.method,
            request_id=request_id,
            error_type=type(exc).__name__,
            error_message=str(exc),
        )

        # Don't expose internal database details in production
        error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": "DatabaseError",
                "message": "A database error occurred",
                "details": [{"code": ErrorCode.DATABASE_ERROR, "message": error_message}],
                "remediation": REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Handle all other uncaught exceptions.

        Logs the full stack trace and returns a safe error message.
        """
        request_id = _request_id(request)
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            request_id=request_id,
            exception_type=type(exc).__name__,
            exception_message=str(exc),
            stack_trace=traceback.format_exc(),
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred",
                "details": [
                    {
                        "code": ErrorCode.INTERNAL_ERROR,
                        "message": str(exc) if settings.debug else "Internal server error",
                    }
                ],
                "remediation": "Please contact support with the request ID",
                "request_id": request_id,
                "timestamp": _timestamp(),
            },
        )


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
    runtime: WebhookRuntime | None = None,
) -> FastAPI:
    """
    Build the webhook delivery API.

    Args:
        settings: Settings (read from the environment when omitted)
        session_factory: Session factory (an engine is created from settings when omitted)
        http_client: Client for outbound deliveries
        runtime: Pre-built runtime; takes precedence over the other arguments

    Returns:
        Configured FastAPI application
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    setup_logging(settings)

    if runtime is None:
        engine = None
        if session_factory is None:
            engine = create_engine_from_settings(settings)
            session_factory = create_session_factory(engine)
        runtime = WebhookRuntime.build(
            settings,
            session_factory,
            http_client or httpx.AsyncClient(),
            engine=engine,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager for startup and shutdown events."""
        logger.info("application_starting", env=settings.app_env)
        yield
        logger.info("application_shutting_down")
        await runtime.aclose()

    app = FastAPI(
        title="Enrollment Webhook Delivery Service",
        description="Signed webhook delivery with retries and circuit breaking for the enrollment platform",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.api_rate_limit_per_minute:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=SlidingWindowRateLimiter(
                runtime.redis,
                limit=settings.api_rate_limit_per_minute,
                window_seconds=60,
                key_prefix="rate_limit:api",
            ),
        )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.mount("/metrics", make_asgi_app())

    register_exception_handlers(app, settings)

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "service": "Enrollment Webhook Delivery Service",
            "version": "0.1.0",
            "status": "operational",
            "docs": "/docs",
        }

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/v1", tags=["Webhooks"])

    if settings.otel_enabled:
        setup_tracing(app, settings, runtime.engine)

    return app


app = create_app()
