"""
Channel Back-Office - Orders, returns and shipping costs across sales channels
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from backoffice.core.config import settings
from backoffice.core.database import engine, Base
from backoffice import models  # noqa: F401  (registers tables on Base)
from backoffice.api import api_router
from backoffice.jobs import start_scheduler, stop_scheduler
from backoffice.services.webhook_processor import start_webhook_processor, stop_webhook_processor

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Create tables if not exist
    Base.metadata.create_all(bind=engine)
    logger.info(f"{settings.APP_NAME} starting on port {settings.APP_PORT}")

    # Start background scheduler for order sync
    try:
        start_scheduler()
    except Exception as e:
        logger.warning(f"Could not start scheduler: {e}")

    await start_webhook_processor()

    yield

    # Shutdown
    await stop_webhook_processor()
    stop_scheduler()
    logger.info(f"{settings.APP_NAME} shutting down")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Order, return and shipping-cost reconciliation across Shopify, Trendyol and Basit Kargo",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api")


# Health check
@app.get("/health")
async def health_check():
    return {"status": "healthy", "app": settings.APP_NAME}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=settings.DEBUG,
    )
