"""FastAPI application entry point.

Store Trust API - venue identity resolution and trust-weighted ratings.
"""

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storetrust.routes import api_router
from storetrust.routes.deps import close_http_client
from storetrust.schemas.common import (
    INTERNAL_ERROR,
    STORE_NOT_FOUND,
    VALIDATION_ERROR,
    error_body,
)
from storetrust.services.background import drain_background
from storetrust.services.identity import StoreNotFoundError, StoreValidationError
from storetrust.settings import get_settings
from storetrust.stores.postgres import init_db, close_db, ping_db
from storetrust.stores.redis import init_redis, close_redis

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Initialize database (skip in tests if no DB available)
    try:
        await init_db()
        await ping_db()
        logger.info("Postgres connected")
    except Exception:
        logger.exception("Postgres init failed")

    # Initialize Redis (cache + dedupe lock degrade to no-ops without it)
    try:
        await init_redis()
    except Exception:
        logger.exception("Redis init failed")

    yield

    # Shutdown: let fire-and-forget writes finish before closing pools
    await drain_background()
    await close_http_client()
    await close_redis()
    await close_db()


def _error(status_code: int, code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(code, message, detail),
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Venue identity resolution and review trust aggregation API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreValidationError)
    async def validation_error_handler(request: Request, exc: StoreValidationError) -> JSONResponse:
        return _error(400, VALIDATION_ERROR, str(exc))

    @app.exception_handler(StoreNotFoundError)
    async def not_found_handler(request: Request, exc: StoreNotFoundError) -> JSONResponse:
        return _error(404, STORE_NOT_FOUND, str(exc), {"store_id": exc.store_id})

    # Exception handler for structured error format
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error(500, INTERNAL_ERROR, str(exc) if settings.debug else "Internal server error")

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, bool]:
        """Health check endpoint."""
        return {"ok": True}

    # Include API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "storetrust.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
