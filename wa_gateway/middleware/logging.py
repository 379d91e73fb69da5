"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from wa_gateway.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    # Path template keeps account ids out of metric labels
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: account_id, user_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration_ms / 1000)
            raise

        duration = time.time() - start_time

        # Set by the auth dependency during the request
        account_id = getattr(request.state, "account_id", None)
        user_id = getattr(request.state, "user_id", None)

        request_logger.info(
            "request_completed",
            path=request.url.path,
            account_id=account_id,
            user_id=user_id,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration)

        return response
