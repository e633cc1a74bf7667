"""
FastAPI application factory for the Prewarm service.

Uses lifespan handler for startup/shutdown with async resource management.
The lifespan also runs the two long-lived background loops: the headless
build event listener and the stale-updatable sweep.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from prewarm.config import settings
from prewarm.db.session import close_db, init_db
from prewarm.logging_config import configure_logging, get_logger
from prewarm.redis.client import close_redis, get_redis_client, init_redis
from prewarm.services.container import build_services
from prewarm.services.encryption_service import init_encryption

from .health import router as health_router

logger = get_logger(__name__)


async def _stop_task(task: asyncio.Task, name: str) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"{name} had stopped with an error", error=str(e), exc_info=e)
    logger.info(f"{name} stopped")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting Prewarm service", version="0.1.0")

    await init_db()
    logger.info("Database initialized")

    await init_redis()
    logger.info("Redis initialized")

    init_encryption()
    logger.info("Encryption initialized")

    services = build_services(settings, get_redis_client())
    app.state.services = services

    listener_task = asyncio.create_task(
        services.bus.listen_headless_events(services.status_maintainer.handle_prebuild_finished)
    )
    logger.info("Headless event listener started")

    sweeper_task = None
    if services.app_client is not None:
        sweeper_task = asyncio.create_task(services.status_maintainer.run_sweeper())
        logger.info("Status maintainer sweep started")

    yield

    await _stop_task(listener_task, "Headless event listener")
    if sweeper_task is not None:
        await _stop_task(sweeper_task, "Status maintainer sweep")

    # Webhook processing still in flight
    await services.supervisor.drain()

    # Shutdown
    logger.info("Shutting down Prewarm service")
    app.state.services = None
    await close_redis()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Prewarm API",
        description="Prewarm - prebuild orchestration for cloud development environments",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    # Provider webhooks
    from prewarm.api.routers.webhooks import router as webhooks_router

    app.include_router(webhooks_router)

    # Automated prebuild installation
    from prewarm.api.routers.repositories import router as repositories_router

    app.include_router(repositories_router)

    # Prebuild endpoints
    from prewarm.api.routers.prebuilds import router as prebuilds_router

    app.include_router(prebuilds_router)

    # Project webhook audit trail
    from prewarm.api.routers.projects import router as projects_router

    app.include_router(projects_router)

    return app


# Application instance
app = create_application()
