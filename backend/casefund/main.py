"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from casefund.core.config import settings
from casefund.core.logging import setup_logging
from casefund.core.otel import (
    initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
)
from casefund.core.security import check_rate_limit, get_client_identifier, log_api_access
from casefund.db import redis as redis_store
from casefund.db.session import engine, init_db

# Import routers
from casefund.api import admin, checkout, monitoring, wallet, webhooks, withdrawals

setup_logging()
logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Processor callbacks and monitoring endpoints are never rate limited
RATE_LIMIT_EXEMPT_PATHS = ("/api/stripe/webhook", "/metrics", "/health")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()

    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        redis_store.get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    tasks = []
    if settings.SCHEDULER_ENABLED:
        logger.info("Starting scheduler tasks...")
        from casefund.tasks.scheduler import start_scheduler_tasks
        tasks = start_scheduler_tasks()
        logger.info(f"{len(tasks)} scheduler tasks started")
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


# Create FastAPI app
app = FastAPI(
    title="Casefund Ledger",
    description="Wallets, case escrow, withdrawals and fee settlement",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000"
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(checkout.router)
app.include_router(wallet.router)
app.include_router(withdrawals.router)
app.include_router(webhooks.router)
app.include_router(admin.router)
app.include_router(monitoring.router)


# Security middleware
@app.middleware("http")
async def security_middleware(request: Request, call_next):
    """Middleware for rate limiting and API access logging"""
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None

    try:
        path = request.url.path
        if path not in RATE_LIMIT_EXEMPT_PATHS and request.method != "OPTIONS":
            identifier = get_client_identifier(request, session_id)
            if not check_rate_limit(identifier):
                error = "Rate limit exceeded"
                status_code = 429
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                return Response(
                    content='{"error": "Rate limit exceeded. Please try again later."}',
                    status_code=429,
                    media_type="application/json"
                )

        response = await call_next(request)
        status_code = response.status_code
        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
