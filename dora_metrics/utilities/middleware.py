import logging
import math
import time
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dora_metrics.exceptions import ErrorCode, error_body

F = TypeVar("F", bound=Callable[..., Any])
logger = logging.getLogger(__name__)

RATE_LIMIT_EXEMPT_PATHS = ("/health",)


async def process_time_log_middleware(request: Request, call_next: F) -> Response:
    """
    Add API process time in response headers and log calls
    """
    start_time = time.time()
    response: Response = await call_next(request)
    process_time = str(round(time.time() - start_time, 3))
    response.headers["X-Process-Time"] = process_time

    logger.info(
        "Method=%s Path=%s StatusCode=%s ProcessTime=%s",
        request.method,
        request.url.path,
        response.status_code,
        process_time,
    )

    return response


async def request_id_middleware(request: Request, call_next: F) -> Response:
    """
    Add a unique request id to the request headers
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed window rate limiter per client address.

    Every client gets `max_requests` per window of `window_seconds`; the window starts with
    the first request of the client. Health checks are not counted.
    """

    def __init__(
        self,
        app,
        window_seconds: int = 900,
        max_requests: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock
        # client -> (window start, requests in window)
        self.windows: dict[str, tuple[float, int]] = {}
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        """Drop the clients whose window is over, at most once per window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        expired = [client for client, (start, _) in self.windows.items() if now - start >= self.window_seconds]
        for client in expired:
            del self.windows[client]

    def _hit(self, client: str) -> tuple[int, float]:
        """Count a request of the client; returns the count in the window and when the window resets."""
        now = self.clock()
        self._sweep(now)
        window_start, count = self.windows.get(client, (now, 0))
        if now - window_start >= self.window_seconds:
            window_start, count = now, 0
        count += 1
        self.windows[client] = (window_start, count)
        return count, window_start + self.window_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        count, reset_at = self._hit(client)
        retry_after = max(1, math.ceil(reset_at - self.clock()))
        headers = {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(max(0, self.max_requests - count)),
            "X-RateLimit-Reset": str(retry_after),
        }

        if count > self.max_requests:
            logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=error_body(
                    ErrorCode.RATE_LIMIT_EXCEEDED,
                    "Too many requests, please try again later",
                    {"retry_after": retry_after},
                ),
                headers={**headers, "Retry-After": str(retry_after)},
            )

        response: Response = await call_next(request)
        response.headers.update(headers)
        return response
