"""
FastAPI application initialization
"""

from typing import Optional
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from api.routes import health, bootstrap_control, catalog
from api.middleware import RequestContextMiddleware
from bootstrap.scheduler import RefreshScheduler
from bootstrap.service import BootstrapService, build_bootstrap_service
from core.config import settings
from core.database import engine as default_engine, async_session_maker, init_models
from core.logging import setup_logging
import logging

logger = logging.getLogger(__name__)


def create_app(
    engine: Optional[AsyncEngine] = None,
    session_maker: Optional[async_sessionmaker] = None,
    service: Optional[BootstrapService] = None,
    bootstrap_on_startup: Optional[bool] = None
) -> FastAPI:
    """Build the API around one bootstrap service (one local catalog store)"""
    app = FastAPI(
        title="Catalog Bootstrap API",
        description="Local show/recording catalog with bootstrap control",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(RequestContextMiddleware)

    app.state.engine = engine or default_engine
    app.state.session_maker = session_maker or async_session_maker
    app.state.bootstrap_service = service or build_bootstrap_service(settings, app.state.session_maker)
    app.state.scheduler = None

    if bootstrap_on_startup is None:
        bootstrap_on_startup = settings.BOOTSTRAP_ON_STARTUP

    app.include_router(health.router)
    app.include_router(bootstrap_control.router)
    app.include_router(catalog.router)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        logger.info("Starting Catalog Bootstrap API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")

        await init_models(app.state.engine)

        if bootstrap_on_startup:
            await app.state.bootstrap_service.start()

        if settings.REFRESH_INTERVAL_MINUTES > 0:
            app.state.scheduler = RefreshScheduler(
                app.state.bootstrap_service, settings.REFRESH_INTERVAL_MINUTES
            )
            app.state.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown event"""
        logger.info("Shutting down Catalog Bootstrap API")
        if app.state.scheduler is not None:
            app.state.scheduler.stop()
        await app.state.bootstrap_service.shutdown()

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Catalog Bootstrap API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "bootstrap": "/bootstrap",
                "shows": "/shows",
                "venues": "/venues",
                "collections": "/collections",
                "catalog": "/catalog"
            }
        }

    return app


setup_logging()
app = create_app()
