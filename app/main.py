# app/main.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
from app.config import settings
from app.core.exceptions import (
    CampaignServiceError,
    DuplicateSubscriberRace,
    InsufficientCredit,
    InvalidUnsubscribeToken,
    StorageUnavailable,
    SubscriberNotFound,
    TemplateRenderError,
)
from app.dependencies import Services, build_services
from app.middleware.cors import setup_cors
from app.database.connection import DatabaseConnection
from app.storage import PostgresBackend

import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# HTTP status per domain error; anything else is a 500
ERROR_STATUS = {
    InsufficientCredit: 402,
    SubscriberNotFound: 404,
    DuplicateSubscriberRace: 409,
    InvalidUnsubscribeToken: 400,
    TemplateRenderError: 422,
    StorageUnavailable: 503,
}

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Tests pass prebuilt services backed by the memory store."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        # Startup
        logger.info("Starting Campaign API...")
        app.state.services = services or build_services(settings)
        if isinstance(app.state.services.storage, PostgresBackend):
            try:
                await DatabaseConnection.get_pool()
                logger.info("Database connection pool initialized")
            except Exception as e:
                if settings.environment == "development":
                    logger.warning(f"Database connection failed (development mode): {e}")
                else:
                    logger.error(f"Failed to initialize database: {e}")
                    raise

        yield

        # Shutdown
        logger.info("Shutting down Campaign API...")
        try:
            await app.state.services.storage.close()
            logger.info("Storage closed")
        except Exception as e:
            logger.warning(f"Error closing storage: {e}")
        try:
            await app.state.services.delivery.close()
        except Exception as e:
            logger.warning(f"Error closing email delivery: {e}")

    app = FastAPI(
        title="Campaign API",
        description="Credit-metered campaign sending and subscriber lifecycle",
        version="1.0.0",
        lifespan=lifespan
    )

    # Setup CORS
    setup_cors(app)

    from app.routes.subscribers import router as subscribers_router
    app.include_router(subscribers_router)

    from app.routes.unsubscribe import router as unsubscribe_router
    app.include_router(unsubscribe_router)

    from app.routes.credits import router as credits_router
    app.include_router(credits_router)

    from app.routes.campaigns import router as campaigns_router
    app.include_router(campaigns_router)

    from app.routes.webhooks import router as webhooks_router
    app.include_router(webhooks_router)

    @app.get("/")
    async def root():
        return {"message": "Campaign API", "status": "healthy"}

    @app.get("/health")
    async def health_check():
        """Health check including the configured storage"""
        storage = app.state.services.storage
        storage_healthy = True
        if isinstance(storage, PostgresBackend):
            storage_healthy = await DatabaseConnection.ping()

        return {
            "status": "healthy" if storage_healthy else "degraded",
            "environment": settings.environment,
            "storage_backend": type(storage).__name__,
            "storage_healthy": storage_healthy,
            "email_delivery": type(app.state.services.delivery).__name__,
        }

    @app.exception_handler(CampaignServiceError)
    async def campaign_error_handler(request: Request, exc: CampaignServiceError):
        status_code = ERROR_STATUS.get(type(exc), 400)
        if status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        else:
            logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")
        content = {"detail": exc.message, "error_code": exc.error_code}
        if not isinstance(exc, InvalidUnsubscribeToken):
            content["details"] = exc.details
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app

app = create_app()
