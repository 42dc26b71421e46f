"""FastAPI application for subscription billing and payment reconciliation"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.otel import initialize_otel, instrument_app
from app.db.session import engine, init_db
from app.db.redis import get_redis_client
from app.api import admin, monitoring, subscriptions, webhooks

setup_logging()
logger = logging.getLogger(__name__)

# Settings each provider needs before it can take payments and verify webhooks
PROVIDER_SETTINGS = {
    "stripe": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "paypal": ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_ID"),
}


def check_provider_settings():
    """Log every unset provider credential; a production deploy with gaps will reject webhooks"""
    log = logger.error if settings.is_production else logger.warning
    for provider, names in PROVIDER_SETTINGS.items():
        missing = [name for name in names if not getattr(settings, name)]
        if missing:
            log(f"{provider} is not fully configured, missing: {', '.join(missing)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not initialize_otel():
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    check_provider_settings()

    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    try:
        get_redis_client().ping()
    except Exception as e:
        # Locks, sessions and the provider retry queue all live in Redis
        logger.error(f"Redis connection failed: {e}")
        raise

    background_tasks = []
    if settings.BILLING_BACKGROUND_TASKS:
        from app.tasks.billing import start_billing_tasks
        background_tasks = start_billing_tasks()
        logger.info(f"Started {len(background_tasks)} billing background tasks")

    yield

    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    logger.info("Billing background tasks stopped")


app = FastAPI(
    title="Job Board Billing",
    description="Subscription billing and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

instrument_app(app, engine)

# Only the employer dashboard calls from a browser; webhooks and admin calls are server-to-server
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.append("http://127.0.0.1:3000")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

app.include_router(webhooks.router)
app.include_router(subscriptions.router)
app.include_router(admin.router)
app.include_router(monitoring.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
