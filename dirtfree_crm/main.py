import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Model modules register their tables on Base before create_all runs
from . import (
    models,  # noqa: F401
    models_invoice,  # noqa: F401
    models_twilio,  # noqa: F401
)
from .config import FRONTEND_URL
from .database import Base, engine
from .error_tracking import init_error_tracking
from .responses import error_response, ok
from .routes.admin import router as admin_router
from .routes.cron import router as cron_router
from .routes.customers import router as customers_router
from .routes.dashboard import router as dashboard_router
from .routes.invoices import router as invoices_router
from .routes.jobs import router as jobs_router
from .routes.sms import router as sms_router
from .routes.twilio import router as twilio_router
from .routes.webhooks import router as webhooks_router
from .security_headers import SecurityHeadersMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# httpx logs every Twilio API call at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"

try:
    init_error_tracking()
except Exception as e:
    logger.warning(f"⚠️ Sentry init failed, errors are only logged: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Dirt Free CRM API starting")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("✅ Database tables ready")
    except Exception as e:
        # Several workers may race to create the same tables
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Tables were created concurrently by another worker")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    try:
        from .rate_limiter import get_redis_client

        get_redis_client()
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(
            f"Redis connection failed, rate limits are counted per process until it recovers: {e}"
        )

    yield
    logger.info("Dirt Free CRM API stopped")


app = FastAPI(title="Dirt Free CRM API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTPException in the JSON error envelope"""
    detail = exc.detail
    if isinstance(detail, dict):
        message = detail.get("message") or str(detail)
    else:
        message = str(detail)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {exc.status_code}: {message}")
    return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request validation failures are client errors: 400 validation_failed"""
    errors = exc.errors()
    logger.warning(f"Validation error for {request.url.path}: {len(errors)} error(s)")
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return error_response(400, "; ".join(messages) or "Invalid request")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} - Unhandled error: {exc}")
    return error_response(500, "Internal server error")


if SECURITY_HEADERS_ENABLED:
    app.add_middleware(
        SecurityHeadersMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"]
    )
    logger.info("Security headers enabled")
else:
    logger.warning("Security headers DISABLED - only use in development!")


# CORS Configuration
# Credentials (the auth cookie) require explicit origins
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:5173").split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,  # Auth cookie
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(twilio_router)
app.include_router(sms_router)
app.include_router(customers_router)
app.include_router(jobs_router)
app.include_router(invoices_router)
app.include_router(dashboard_router)
app.include_router(webhooks_router)
app.include_router(cron_router)
app.include_router(admin_router)


@app.get("/")
def root():
    return ok({"message": "Dirt Free CRM API is running"})


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/health/redis")
async def redis_health_check():
    """Check Redis connectivity for monitoring"""
    try:
        from .rate_limiter import get_redis_client

        redis_client = get_redis_client()

        start_time = time.time()
        redis_client.ping()
        response_time = (time.time() - start_time) * 1000  # Convert to milliseconds

        info = redis_client.info()

        return {
            "status": "healthy",
            "redis": {
                "connected": True,
                "response_time_ms": round(response_time, 2),
                "version": info.get("redis_version", "unknown"),
                "used_memory_human": info.get("used_memory_human", "unknown"),
                "connected_clients": info.get("connected_clients", 0),
            },
        }
    except Exception as e:
        return {"status": "unhealthy", "redis": {"connected": False, "error": str(e)}}
