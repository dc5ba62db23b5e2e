import hmac
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from cleanbook.bookings.routes import router as bookings_router
from cleanbook.config import settings
from cleanbook.database import async_session
from cleanbook.exceptions import BookingEngineError
from cleanbook.metrics import HTTP_LATENCY, HTTP_REQUESTS
from cleanbook.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from cleanbook.notifications.routes import router as notifications_router
from cleanbook.payments.routes import router as payments_router
from cleanbook.services.booking_cache import BookingViewCache
from cleanbook.services.notifications import close_http_client
from cleanbook.utils.rate_limit import limiter


def configure_logging() -> None:
    """Console output while developing, one JSON object per line elsewhere."""
    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
    )


configure_logging()
logger = structlog.get_logger()

if settings.SENTRY_DSN:
    # Bookings carry customer names and emails; keep them out of Sentry
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.APP_ENV,
        traces_sample_rate=0.1,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.booking_cache = BookingViewCache(ttl_seconds=settings.BOOKING_CACHE_TTL_SECONDS)
    logger.info(
        "cleanbook_startup",
        env=settings.APP_ENV,
        mock_payments=not settings.STRIPE_SECRET_KEY,
        cache_ttl=settings.BOOKING_CACHE_TTL_SECONDS,
    )
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("stripe_webhook_secret_empty", message="Webhook events will be rejected with 501")

    yield

    app.state.booking_cache.clear()
    await close_http_client()
    logger.info("cleanbook_shutdown")


_show_docs = not settings.is_production

app = FastAPI(
    title="Cleanbook API",
    description="Bookings and payment settlement for home-service businesses",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if _show_docs else None,
    redoc_url="/redoc" if _show_docs else None,
    openapi_url="/openapi.json" if _show_docs else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def _error(status_code: int, message: str, kind: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "kind": kind, **extra},
    )


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("booking_request_rejected", path=request.url.path, kind=exc.kind, error=exc.message)
    return _error(exc.status_code, exc.message, exc.kind)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return _error(422, message, "validation", detail=jsonable_encoder(errors))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV == "development":
        # Let the server print the traceback
        raise exc
    return _error(500, "Internal server error", "error")


# Added last so it wraps everything else, including CORS preflights
if settings.is_production:
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH"],
        allow_headers=["Content-Type", "X-Admin-Key", "X-Request-ID"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)
app.add_middleware(RequestContextMiddleware)


def _record_http(info) -> None:
    HTTP_REQUESTS.labels(info.method, info.modified_status, info.modified_handler).inc()
    HTTP_LATENCY.labels(info.method, info.modified_handler).observe(info.modified_duration)


# The instrumentator's default metrics choke on non-numeric Content-Length
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_record_http).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus scrape target. Needs ``x-metrics-key`` once a key is configured."""
    if not settings.METRICS_API_KEY:
        if settings.is_production:
            raise HTTPException(status_code=503, detail="Metrics not available")
    elif not hmac.compare_digest(request.headers.get("x-metrics-key", ""), settings.METRICS_API_KEY):
        raise HTTPException(status_code=403, detail="Invalid metrics API key")

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
app.include_router(payments_router, prefix="/payments", tags=["payments"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    payments_mode = "live" if settings.STRIPE_SECRET_KEY else "mock"
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("health_database_unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "payments": payments_mode},
        )
    return {"status": "ok", "database": "connected", "payments": payments_mode}
