"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Circuit breaker for the payment provider
- Redis-backed rate limiting for unauthenticated traffic
- Structured JSON logging with request ids
- Prometheus metrics
"""

import json
import logging
import os
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError

from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from shared.exceptions import AppError, ProviderUnavailableError, ValidationError

# Service routers
from services.booking.router import router as booking_router
from services.meeting.provider import close_meeting_provider, init_meeting_provider
from services.meeting.router import router as meeting_router
from services.notification.realtime import init_realtime_publisher
from services.notification.router import router as notification_router
from services.payment.provider import init_payment_provider
from services.payment.router import router as payment_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} ({settings.APP_ENV})...")

    await init_db()
    logger.info("Database connected")

    redis = await init_redis()
    logger.info("Redis connected")

    init_realtime_publisher(redis)
    init_payment_provider()
    init_meeting_provider()
    logger.info("Providers initialized")

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_meeting_provider()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def _error_response(request: Request, exc: AppError, status_code: int = None) -> JSONResponse:
    body = exc.to_dict()
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        body["request_id"] = request_id
    return JSONResponse(status_code=status_code or exc.status_code, content=body)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Mentorship Marketplace API

Booking and payment lifecycle for paid mentorship sessions:
- **Bookings**: create, pay, accept/reject, complete, cancel
- **Payments**: Stripe Connect holds, capture, payouts, refunds, webhooks
- **Notifications**: in-app inbox with live delivery over WebSocket
- **Meetings**: Zoom meeting provisioning and meeting-ended webhook

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Profiles
- `STUDENT`: book and pay for sessions, request refunds
- `EXPERT`: accept/reject bookings, onboard to Stripe, view balance and payouts
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────────────────────
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limit for unauthenticated callers, per IP.
        Health checks, metrics and provider webhooks are never limited.
        """
        skip_paths = {
            "/health",
            "/metrics",
            "/payments/webhook",
            "/zoom/webhook",
            "/docs",
            "/redoc",
            "/openapi.json",
        }
        if request.url.path in skip_paths or request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        try:
            from config.redis_client import redis_client
            if redis_client:
                client_ip = request.client.host if request.client else "unknown"
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
                if not allowed:
                    logger.warning(f"Rate limit exceeded for IP {client_ip}")
                    return JSONResponse(
                        status_code=429,
                        content={
                            "success": False,
                            "error": "RateLimitError",
                            "message": "Rate limit exceeded. Please slow down.",
                        },
                        headers={"Retry-After": "60"},
                    )
        except Exception as e:
            # Fail open if Redis is down
            logger.error(f"Rate limit check failed: {str(e)}")

        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"[{getattr(request.state, 'request_id', None)}] {exc.kind}: {exc.message}")
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return _error_response(request, ValidationError("Invalid request", {"errors": errors}))

    @app.exception_handler(CircuitBreakerError)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerError):
        # Circuit breaker is open - service degradation
        logger.error(f"[{getattr(request.state, 'request_id', None)}] Circuit breaker open: {exc}")
        return _error_response(
            request,
            ProviderUnavailableError("Service temporarily unavailable. Please try again later."),
            status_code=503,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)

        if settings.DEBUG:
            message = str(exc)
            logger.debug(traceback.format_exc())
        else:
            message = "An internal server error occurred"

        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "InternalError",
                "message": message,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(notification_router)
    app.include_router(meeting_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
