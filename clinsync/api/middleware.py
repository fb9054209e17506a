"""HTTP middleware stack.

Request lines are logged here and the request context (client address and
user agent) is opened for the audit trail; the acting user is attached
later by the authentication dependency.
"""

import logging
import os
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from clinsync.api.security import (
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    get_client_ip,
    get_rate_limit_config,
)
from clinsync.infrastructure.request_context import reset_request_context, set_request_context
from clinsync.infrastructure.settings import settings

logger = logging.getLogger(__name__)

# Requests slower than this are logged at WARNING (bulk sync waits on REDCap)
SLOW_REQUEST_SECONDS = 5.0


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Opens the request context, tags the response and logs the request line.

    Unhandled exceptions become a generic 500 here; domain errors never
    reach this point because the exception handlers in ``api.main`` answer
    them first.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        client_ip = get_client_ip(request)
        token = set_request_context(ip_address=client_ip, user_agent=request.headers.get("User-Agent"))
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = time.perf_counter() - started
            logger.error(
                f"[{request_id}] {request.method} {request.url.path} from {client_ip} failed "
                f"after {elapsed * 1000:.0f}ms: {type(e).__name__}: {e}",
                exc_info=True
            )
            response = JSONResponse(status_code=500, content={"error": "Internal server error"})
        else:
            elapsed = time.perf_counter() - started
            level = logging.WARNING if elapsed > SLOW_REQUEST_SECONDS else logging.INFO
            logger.log(
                level,
                f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} "
                f"({elapsed * 1000:.0f}ms, {client_ip})"
            )
        finally:
            reset_request_context(token)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        return response


def setup_middleware(app) -> None:
    """Install the middleware stack on ``app``.

    Starlette runs the last middleware added first, so the order below is
    innermost first:

        RequestContextMiddleware -> RateLimitMiddleware -> SecurityHeadersMiddleware

    Security headers therefore land on every response, rate-limited ones
    included.
    """
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_limit=settings.rate_limit_per_minute,
        default_window=60,
        per_endpoint_limits=get_rate_limit_config()
    )
    app.add_middleware(
        SecurityHeadersMiddleware,
        enable_hsts=os.getenv("CS_ENABLE_HSTS", "false").lower() == "true"
    )
