#!/usr/bin/env python3
"""
Stardeck Backend - Container and Stack Lifecycle Engine

Deploys, updates (with rollback), backs up and removes containers on a
single Docker or Podman host, and manages Compose stacks.

IMPORTANT: Container references
-------------------------------
Container endpoints accept a Stardeck record id, an engine id (full or a
12+ character prefix) or a container name. Records are always resolved
first so a managed container keeps working across updates, which change
its engine id.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import audit, backups, containers, images, networks, stacks, streams, templates, volumes
from api.errors import stardeck_exception_handler
from config.paths import ensure_data_dirs
from config.settings import AppConfig, get_cors_origins, setup_logging
from engine.errors import StardeckError
from services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    owns_services = app.state.services is None
    if owns_services:
        ensure_data_dirs()
        config = AppConfig()
        setup_logging(config.LOG_LEVEL)
        # Validate configuration early to fail fast on misconfiguration
        config.validate()
        app.state.services = build_services(config)

    services: Services = app.state.services
    logger.info("Starting Stardeck backend...")
    try:
        version = await services.engine.version()
        logger.info(f"Connected to container engine {version.get('Version', 'unknown')}")
    except StardeckError as e:
        # Engine may come up later; every call retries the connection
        logger.warning(f"Container engine not reachable at startup: {e}")

    compose_version = await services.stacks.driver.tool_version()
    if compose_version:
        logger.info(f"Compose tool version {compose_version}")

    yield

    logger.info("Shutting down Stardeck backend...")
    if owns_services:
        await services.shutdown()
    else:
        await services.supervisor.shutdown()
    logger.info("Shutdown complete")


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Custom handler for Pydantic validation errors.
    Returns user-friendly error messages with field-level details.
    """
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(x) for x in error['loc'])
        errors.append({
            "field": field,
            "message": error['msg'],
            "type": error['type']
        })

    logger.warning(f"Validation failed for {request.url.path}: {errors}")

    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request data",
            "errors": errors
        }
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Prebuilt services (tests). When omitted they are built
            from the environment at startup and closed at shutdown.
    """
    app = FastAPI(
        title="Stardeck API",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.services = services

    # Configure CORS only when origins are configured (API keys are not cookies)
    origins = get_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )
        logger.info(f"CORS configured for specific origins: {origins}")

    app.add_exception_handler(StardeckError, stardeck_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # ==================== API Routes ====================

    app.include_router(streams.router)
    app.include_router(containers.router)
    app.include_router(stacks.router)
    app.include_router(templates.router)
    app.include_router(images.router)
    app.include_router(volumes.router)
    app.include_router(networks.router)
    app.include_router(backups.router)
    app.include_router(audit.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for container health checks - no authentication required"""
        return {"status": "healthy", "service": "stardeck-backend"}

    return app


app = create_app()


def run():
    config = AppConfig()
    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
