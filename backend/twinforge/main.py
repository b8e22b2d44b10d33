"""
TwinForge Scan API v1.0
FastAPI backend for the body scan pipeline: photo-based measurement
estimation, semantic classification, archetype matching, AI morph
refinement and scan persistence on async PostgreSQL.
"""
import os
import sys
import logging
import time
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse
from twinforge.services.logging_config import setup_logging
from twinforge.services.middleware import (
    RateLimitMiddleware,
    RequestTimingMiddleware,
    SecurityHeadersMiddleware,
)
from twinforge.services.errors import TwinForgeError, UpstreamAIError
from twinforge.services.perf_monitor import tracker as perf_tracker

# Load .env file automatically in dev (no-op when the file is missing)
load_dotenv()

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("twinforge-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Startup validation
for var in ["DATABASE_URL", "OPENAI_API_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
for var in ["SUPABASE_JWT_SECRET", "LLM_FALLBACK_MODEL"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from twinforge.db import engine, init_db
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="TwinForge Scan API",
    version="1.0.0",
    description="Body scan pipeline: estimation, semantic analysis, archetype matching and morph refinement",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error envelope: every failure is returned as {"error": ...}
# ---------------------------------------------------------------------------
def _trace_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = "Method not allowed" if exc.status_code == 405 else exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request body"))
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(TwinForgeError)
async def pipeline_exception_handler(request: Request, exc: TwinForgeError):
    if isinstance(exc, UpstreamAIError):
        content = {"error": exc.user_message, "details": exc.detail, "kind": exc.kind}
    else:
        content = {"error": str(exc), "details": type(exc).__name__}
    content["traceId"] = _trace_id(request)
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}", extra={"request_id": content["traceId"]})
    return JSONResponse(status_code=exc.http_status, content=content)


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:5173,http://localhost:3000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Client-Info", "apikey"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from twinforge.api.scan_routes import router as scan_router  # noqa: E402

app.include_router(scan_router)


@app.get("/health")
async def health_check():
    from twinforge.services import llm_client
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "llm_model": llm_client.VISION_MODEL,
        "llm_fallback_model": llm_client.FALLBACK_MODEL or None,
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Per-stage call counts and average durations, error counts, fallback
    usage and process memory, sourced from the in-process PerformanceTracker.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)
    except ImportError:
        memory_mb = 0.0

    snapshot = perf_tracker.get_metrics()
    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **snapshot,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "twinforge.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENVIRONMENT", "development") == "development",
    )
