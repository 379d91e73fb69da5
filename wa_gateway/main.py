"""
WhatsApp Gateway - webhook delivery service

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Import observability modules
from wa_gateway.config import settings
from wa_gateway.database import get_db
from wa_gateway.logging_config import configure_logging, get_logger
from wa_gateway.sentry_config import configure_sentry
from wa_gateway.middleware.logging import LoggingMiddleware
from wa_gateway.routes.metrics import router as metrics_router

# Import route modules
from wa_gateway.routes.webhooks import router as webhooks_router, get_delivery_service
from wa_gateway.services.webhook_delivery_service import WebhookDeliveryService, webhook_delivery_service

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = get_logger(component="main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the delivery worker for the lifetime of the process."""
    await webhook_delivery_service.start()
    logger.info("application_started", environment=settings.ENVIRONMENT)
    try:
        yield
    finally:
        await webhook_delivery_service.stop()
        logger.info("application_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Multi-tenant WhatsApp gateway with durable webhook delivery",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include webhook delivery routes
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Liveness endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(
    db: AsyncSession = Depends(get_db),
    service: WebhookDeliveryService = Depends(get_delivery_service)
):
    """Detailed health check."""
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning("health_database_unreachable", error=str(e))
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "webhook_queue": "available" if service.queue_available else "fallback",
        "worker": service.worker.status()
    }
