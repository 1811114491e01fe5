"""
FastAPI middleware for request tracing and logging.

This module provides middleware that:
- Generates unique request IDs for tracing
- Logs request/response information with timing
- Binds context for correlation across pipeline stages
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging import bind_context, clear_context, get_logger


logger = get_logger(__name__)


def client_identifier(request: Request) -> str:
    """
    Best-effort anonymous client identifier.

    Prefers the first X-Forwarded-For hop, then X-Real-IP, then the socket
    peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# Probe endpoints are polled constantly; their traffic is logged at DEBUG
QUIET_PATHS = frozenset({"/health", "/ready", "/live"})


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds request tracing and logging.

    Features:
    - Generates unique request_id for each request
    - Logs request start/end with timing (DEBUG for probe paths)
    - Binds context for all logs during request processing
    - Adds X-Request-ID header to response

    Usage:
        app = FastAPI()
        app.add_middleware(RequestTracingMiddleware)
    """

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])

        bind_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        start_time = time.perf_counter()
        log("Request started", client=client_identifier(request))

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log(
                "Request completed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "Request failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            raise

        finally:
            # Clear context to prevent leaking to next request
            clear_context()
