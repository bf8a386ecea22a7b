"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from repoverify.api.routes import router
from repoverify.config import Settings, get_settings
from repoverify.database.session import close_db, create_engine, create_session_factory, init_db
from repoverify.observability import configure_logging
from repoverify.sandbox.runtime import SandboxRuntime
from repoverify.service import build_service


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    database_url: str | None = None,
    runtime: SandboxRuntime | None = None,
) -> FastAPI:
    """Build the API app; the arguments exist so tests can swap backends."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        engine = create_engine(settings, url=database_url)
        if settings.environment == "development":
            await init_db(engine)
            logger.info("Database initialized")

        session_factory = create_session_factory(engine)
        service = build_service(settings, session_factory, runtime=runtime)
        await service.start(workers=settings.api_run_workers)

        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.service = service

        yield

        # Shutdown
        logger.info("Shutting down...")
        await service.stop()
        await close_db(engine)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="RepoVerify API - checks that repositories install and start",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routes
    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


def get_app() -> FastAPI:
    """Factory used by uvicorn (``--factory``)."""
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "repoverify.api.main:get_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
