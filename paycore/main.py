"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paycore.config import settings
from paycore.database import close_db
from paycore.errors import PaymentError
from paycore.logging_config import configure_logging
from paycore.redis import RedisClient

# Import routers - MUST BE AT TOP LEVEL
from paycore.api.checkout import router as checkout_router
from paycore.api.webhooks import router as webhooks_router
from paycore.api.instructor import router as instructor_router
from paycore.api.admin.payments import router as admin_payments_router
from paycore.api.admin.withdrawals import router as admin_withdrawals_router
from paycore.api.admin.commissions import router as admin_commissions_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logger.info(f"Starting up {settings.app_name} ({settings.app_env})...")

    # Initialize Redis
    try:
        RedisClient.get_client()
    except Exception as e:
        logger.warning(f"Failed to initialize Redis: {e}")

    yield

    # Shutdown
    await RedisClient.close()
    await close_db()
    logger.info("Shutting down...")


app = FastAPI(
    title="paycore",
    description="Multi-gateway payment orchestration and instructor earnings settlement",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )


# CORS middleware
origins = [settings.public_base_url]
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


# Register checkout and webhook routes
app.include_router(
    checkout_router,
    prefix="/checkout",
    tags=["checkout"],
)
app.include_router(
    webhooks_router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Register instructor routes
app.include_router(
    instructor_router,
    prefix="/instructor",
    tags=["instructor"],
)

# Register admin routes
app.include_router(
    admin_payments_router,
    prefix="/admin",
    tags=["admin"],
)
app.include_router(
    admin_withdrawals_router,
    prefix="/admin",
    tags=["admin"],
)
app.include_router(
    admin_commissions_router,
    prefix="/admin",
    tags=["admin"],
)
