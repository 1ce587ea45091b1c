"""API-wide rate limiting middleware.

Counts requests per client in a Redis-backed sliding window shared by every
API process. The per-webhook test trigger limit is enforced separately by the
delivery worker.
"""
import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from enrollment_webhooks.schemas.error import ErrorCode, REMEDIATION_HINTS
from enrollment_webhooks.services.rate_limiter import SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

EXEMPT_PATHS = ("/health", "/health/ready", "/metrics")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limits requests per minute per API key or IP address."""

    def __init__(self, app: ASGIApp, limiter: SlidingWindowRateLimiter):
        """
        Initialize rate limiter.

        Args:
            app: ASGI application
            limiter: Window shared across API processes
        """
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path.startswith(EXEMPT_PATHS):
            return await call_next(request)

        identifier = self._get_identifier(request)
        decision = await self.limiter.hit(identifier)

        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                path=request.url.path,
                method=request.method,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "RateLimitExceeded",
                    "message": f"Maximum {decision.limit} requests per minute exceeded",
                    "details": {"retry_after": decision.retry_after},
                    "remediation": REMEDIATION_HINTS.get(ErrorCode.RATE_LIMIT_EXCEEDED),
                },
                headers=decision.headers(),
            )

        response = await call_next(request)
        # Endpoint-specific limits (the test trigger) take precedence
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)
        return response

    @staticmethod
    def _get_identifier(request: Request) -> str:
        """API key when supplied, otherwise the first forwarded or direct client IP."""
        api_key = request.headers.get("x-api-key")
        if api_key:
            return f"api_key:{api_key}"

        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return f"ip:{forwarded_for.split(',')[0].strip()}"

        return f"ip:{request.client.host if request.client else 'unknown'}"
