"""Request tracing, rate limiting and security header middleware for TwinForge."""
import collections
import os
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("twinforge-api.middleware")

SKIP_LOG_PATHS = {"/health"}


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Assigns a unique X-Request-ID (uuid4) to every request/response.
    - Measures end-to-end request duration in milliseconds.
    - Adds X-Process-Time header to every response.
    - Emits a structured log line for every request (except /health).
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.perf_counter()

        # Route handlers use this as the trace id in error bodies
        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path not in SKIP_LOG_PATHS:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "http_status": response.status_code,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                },
            )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter.
    Buckets:
      - scan stages that call the vision model : SCAN_RATE_LIMIT_PER_MINUTE per IP
      - everything else                        : RATE_LIMIT_PER_MINUTE per IP
    A limit of 0 disables the bucket.
    """
    AI_PATHS = (
        "/api/v1/scan-estimate",
        "/api/v1/scan-semantic",
        "/api/v1/scan-refine-morphs",
    )

    def __init__(self, app):
        super().__init__(app)
        self._windows: dict = collections.defaultdict(collections.deque)
        self._general_limit = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
        self._scan_limit = int(os.getenv("SCAN_RATE_LIMIT_PER_MINUTE", "10"))

    def _get_limit(self, path: str) -> int:
        if path in self.AI_PATHS:
            return self._scan_limit
        return self._general_limit

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        path = request.url.path
        limit = self._get_limit(path)
        if limit <= 0:
            return await call_next(request)
        ip = request.client.host if request.client else "unknown"
        bucket = f"{ip}:{path if path in self.AI_PATHS else 'general'}"
        now = time.monotonic()
        window = self._windows[bucket]
        while window and now - window[0] > 60:
            window.popleft()
        if len(window) >= limit:
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests. Please slow down."},
                headers={"Retry-After": "60"},
            )
        window.append(now)
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response
