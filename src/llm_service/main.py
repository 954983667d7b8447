"""
FastAPI application for the forecast arena.

This module provides:
- Arena trigger routes (decision cycle, snapshots, resolutions, cohorts)
- Health check and model listing endpoints
- Request logging middleware
- CORS configuration for frontend access
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from arena.api import router as arena_router
from arena.engine import ArenaEngine, build_engine
from llm_service import __version__
from llm_service.config import Settings, configure_logging, get_logger, get_settings
from llm_service.llm.providers import list_available_models
from llm_service.llm.schemas import HealthResponse, ModelsResponse


def create_app(engine: ArenaEngine | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        engine: Pre-built engine (tests); when None the lifespan builds one
            from settings, creates the tables and seeds the model roster
        settings: Settings override (defaults to get_settings())

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger = configure_logging(settings)
        logger.info("Starting forecast arena service", extra={"port": settings.service_port})

        owns_engine = engine is None
        if owns_engine:
            app.state.engine = build_engine(settings)
            app.state.engine.database.create_all()
            app.state.engine.cohorts.seed_models()
        else:
            app.state.engine = engine
        logger.info("Arena engine initialized")

        yield

        logger.info("Shutting down forecast arena service")
        if owns_engine:
            app.state.engine.database.dispose()

    app = FastAPI(
        title="Forecast Arena",
        description="Weekly forecasting competition between LLM agents on prediction markets",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        get_logger().info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"duration_ms": int((time.time() - started) * 1000)},
        )
        return response

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            HealthResponse: Service health status
        """
        get_logger().debug("Health check requested")
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=__version__,
        )

    @app.get("/api/models", response_model=ModelsResponse, tags=["Models"])
    async def list_models() -> ModelsResponse:
        """
        List the competing models.

        Returns:
            ModelsResponse: Models with their routing IDs and pricing
        """
        return ModelsResponse(models=list_available_models())

    app.include_router(arena_router)
    return app


def main() -> None:
    """Run the service with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host="0.0.0.0",
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
